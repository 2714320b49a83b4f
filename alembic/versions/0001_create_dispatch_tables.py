from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def upgrade():
    op.create_table(
        "workers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("skills", sa.JSON(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("timezone", sa.String(), nullable=False),
        sa.Column("availability", sa.String(), nullable=False),
        sa.Column("active_booking_id", sa.String(), nullable=True),
        sa.Column("rating", sa.Float(), nullable=False),
        sa.Column("completed_jobs", sa.Integer(), nullable=False),
        sa.Column("last_location_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_workers_worker_id", "workers", ["worker_id"], unique=True)
    op.create_index("ix_workers_latitude", "workers", ["latitude"], unique=False)
    op.create_index("ix_workers_longitude", "workers", ["longitude"], unique=False)
    op.create_index("ix_workers_availability", "workers", ["availability"], unique=False)
    op.create_index("ix_workers_active_booking_id", "workers", ["active_booking_id"], unique=False)

    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("worker_id", sa.String(), sa.ForeignKey("workers.worker_id"), nullable=False, unique=True),
        sa.Column("balance", MONEY, nullable=False),
        sa.Column("total_earnings", MONEY, nullable=False),
        sa.Column("total_withdrawals", MONEY, nullable=False),
        sa.Column("minimum_reserve", MONEY, nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("last_withdrawal_date", sa.Date(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("skill", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("assigned_worker_id", sa.String(), nullable=True),
        sa.Column("estimated_cost", MONEY, nullable=False),
        sa.Column("final_cost", MONEY, nullable=True),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("dispatch_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(), nullable=True),
    )
    op.create_index("ix_bookings_booking_id", "bookings", ["booking_id"], unique=True)
    op.create_index("ix_bookings_requester_id", "bookings", ["requester_id"], unique=False)
    op.create_index("ix_bookings_skill", "bookings", ["skill"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)
    op.create_index("ix_bookings_assigned_worker_id", "bookings", ["assigned_worker_id"], unique=False)

    op.create_table(
        "booking_assignments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_booking_assignments_booking_id", "booking_assignments", ["booking_id"], unique=False)

    op.create_table(
        "booking_rejections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_booking_rejections_booking_id", "booking_rejections", ["booking_id"], unique=False)

    op.create_table(
        "booking_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_booking_events_booking_id", "booking_events", ["booking_id"], unique=False)
    op.create_index("ix_booking_events_kind", "booking_events", ["kind"], unique=False)

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("destination", sa.String(), nullable=True),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_transactions_transaction_id", "transactions", ["transaction_id"], unique=True)
    op.create_index("ix_transactions_wallet_id", "transactions", ["wallet_id"], unique=False)
    op.create_index("ix_transactions_worker_id", "transactions", ["worker_id"], unique=False)
    op.create_index("ix_transactions_booking_id", "transactions", ["booking_id"], unique=False)
    op.create_index("ix_transactions_type", "transactions", ["type"], unique=False)
    op.create_index("ix_transactions_status", "transactions", ["status"], unique=False)


def downgrade():
    op.drop_table("transactions")
    op.drop_table("booking_events")
    op.drop_table("booking_rejections")
    op.drop_table("booking_assignments")
    op.drop_table("bookings")
    op.drop_table("wallets")
    op.drop_table("workers")
