import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .db import Base

Money = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (BookingStatus.ASSIGNED, BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS)


class Availability(str, enum.Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TransactionType(str, enum.Enum):
    EARNING = "earning"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"
    PENALTY = "penalty"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Worker(Base):
    __tablename__ = "workers"

    id = Column(Integer, primary_key=True)
    worker_id = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    skills = Column(JSON, nullable=False)
    latitude = Column(Float, nullable=True, index=True)
    longitude = Column(Float, nullable=True, index=True)
    timezone = Column(String, nullable=False, default="UTC")

    availability = Column(String, nullable=False, index=True)  # available/busy/offline
    # at most one active booking per worker; reserved on assignment
    active_booking_id = Column(String, nullable=True, index=True)

    rating = Column(Float, nullable=False, default=0.0)
    completed_jobs = Column(Integer, nullable=False, default=0)

    last_location_update = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True)
    worker_id = Column(String, ForeignKey("workers.worker_id"), unique=True, nullable=False)

    balance = Column(Money, nullable=False, default=0)
    total_earnings = Column(Money, nullable=False, default=0)
    total_withdrawals = Column(Money, nullable=False, default=0)
    minimum_reserve = Column(Money, nullable=False)
    currency = Column(String, nullable=False)
    last_withdrawal_date = Column(Date, nullable=True)  # worker-local calendar date

    version = Column(Integer, nullable=False, default=1)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    requester_id = Column(String, nullable=False, index=True)
    skill = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    scheduled_time = Column(DateTime(timezone=True), nullable=False)
    priority = Column(String, nullable=False, default=Priority.MEDIUM.value)

    status = Column(String, nullable=False, index=True)  # see BookingStatus
    assigned_worker_id = Column(String, nullable=True, index=True)

    estimated_cost = Column(Money, nullable=False, default=0)
    final_cost = Column(Money, nullable=True)
    currency = Column(String, nullable=False)

    notes = Column(Text, nullable=True)
    dispatch_note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String, nullable=True)

    rejections = relationship(
        "BookingRejection", order_by="BookingRejection.id", lazy="raise"
    )
    assignments = relationship(
        "BookingAssignment", order_by="BookingAssignment.id", lazy="raise"
    )
    events = relationship("BookingEvent", order_by="BookingEvent.id", lazy="raise")


class BookingAssignment(Base):
    __tablename__ = "booking_assignments"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)
    worker_id = Column(String, nullable=False)
    status = Column(String, nullable=False)  # resulting booking status
    created_at = Column(DateTime(timezone=True), nullable=False)


class BookingRejection(Base):
    __tablename__ = "booking_rejections"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)
    worker_id = Column(String, nullable=False)
    reason = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class BookingEvent(Base):
    """Operator-visible annotation: no_candidate, settlement_failed, worker_readmitted."""

    __tablename__ = "booking_events"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)
    kind = Column(String, nullable=False, index=True)
    detail = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class LedgerTransaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String, unique=True, nullable=False, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    worker_id = Column(String, nullable=False, index=True)
    booking_id = Column(String, nullable=True, index=True)

    type = Column(String, nullable=False, index=True)  # see TransactionType
    status = Column(String, nullable=False, index=True)  # see TransactionStatus
    amount = Column(Money, nullable=False)
    balance_after = Column(Money, nullable=False)
    currency = Column(String, nullable=False)
    description = Column(String, nullable=False)

    destination = Column(String, nullable=True)  # masked, last four characters
    reference = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
