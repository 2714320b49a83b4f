"""
Worker wallets and their append-only transaction log.

Every balance change goes through ``_mutate_wallet``: a conditional update
keyed on the wallet's version column, paired in the same database
transaction with exactly one ``LedgerTransaction`` whose ``balance_after``
equals the new balance.

``settle_earning`` is intentionally not idempotent: crediting the same booking
twice credits twice. Callers settling a booking must go through
``settle_booking_earning`` (or perform the same "has this booking already
produced an earning?" check) before calling it.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from dateutil import tz
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .config import DEFAULT_CURRENCY, MINIMUM_RESERVE
from .errors import (
    ConcurrencyConflict,
    InvalidState,
    LedgerRuleViolation,
    NotFound,
    RuleViolation,
    ValidationFailed,
)
from .models import (
    LedgerTransaction,
    TransactionStatus,
    TransactionType,
    Wallet,
    Worker,
    utcnow,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

RULE_AMOUNT_NOT_POSITIVE = "amount_not_positive"
RULE_MINIMUM_RESERVE = "minimum_reserve"
RULE_DAILY_LIMIT = "daily_limit"


def to_money(value) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationFailed("amount must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationFailed("amount must be finite")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationFailed(f"amount is not a number: {value!r}")
    if not amount.is_finite():
        raise ValidationFailed("amount must be finite")
    return amount.quantize(CENT)


def local_date(moment: datetime, tz_name: str | None) -> date:
    """Calendar date of ``moment`` in the worker's timezone (UTC if unknown)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    zone = tz.gettz(tz_name) if tz_name else None
    return moment.astimezone(zone or tz.UTC).date()


def mask_destination(destination: str) -> str:
    return f"****{destination[-4:]}"


def withdrawal_violations(wallet: Wallet, amount: Decimal, today: date) -> list[RuleViolation]:
    violations = []
    reserve = wallet.minimum_reserve
    available = max(Decimal("0"), wallet.balance - reserve)

    if amount <= 0:
        violations.append(
            RuleViolation(RULE_AMOUNT_NOT_POSITIVE, "Withdrawal amount must be greater than 0")
        )

    if wallet.balance - amount < reserve:
        violations.append(
            RuleViolation(
                RULE_MINIMUM_RESERVE,
                f"Minimum balance of {reserve} must be maintained. "
                f"Available for withdrawal: {available}",
            )
        )

    if wallet.last_withdrawal_date is not None and wallet.last_withdrawal_date == today:
        violations.append(RuleViolation(RULE_DAILY_LIMIT, "Only one withdrawal per day is allowed"))

    return violations


@dataclass
class SettlementResult:
    settled: bool
    transaction: LedgerTransaction | None = None
    already_settled: bool = False


@dataclass
class BalanceView:
    worker_id: str
    balance: Decimal
    available_for_withdrawal: Decimal
    total_earnings: Decimal
    total_withdrawals: Decimal
    minimum_reserve: Decimal
    currency: str
    last_withdrawal_date: date | None
    can_withdraw_today: bool


@dataclass
class TransactionPage:
    transactions: list[LedgerTransaction]
    current_page: int
    total_pages: int
    total: int

    @property
    def has_next(self) -> bool:
        return self.current_page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.current_page > 1


class Ledger:
    def __init__(
        self,
        session_factory,
        clock=utcnow,
        minimum_reserve: Decimal = MINIMUM_RESERVE,
        currency: str = DEFAULT_CURRENCY,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.minimum_reserve = to_money(minimum_reserve)
        self.currency = currency

    # ---- wallet lifecycle ----

    def open_wallet(self, session: AsyncSession, worker_id: str) -> Wallet:
        """Stage a new empty wallet in the caller's transaction (worker registration)."""
        wallet = Wallet(
            worker_id=worker_id,
            balance=Decimal("0.00"),
            total_earnings=Decimal("0.00"),
            total_withdrawals=Decimal("0.00"),
            minimum_reserve=self.minimum_reserve,
            currency=self.currency,
            version=1,
        )
        session.add(wallet)
        return wallet

    async def _wallet(self, session: AsyncSession, worker_id: str) -> Wallet:
        res = await session.execute(
            select(Wallet).where(Wallet.worker_id == worker_id).execution_options(populate_existing=True)
        )
        wallet = res.scalar_one_or_none()
        if not wallet:
            raise NotFound(f"Wallet not found for worker {worker_id}")
        return wallet

    async def _mutate_wallet(
        self,
        session: AsyncSession,
        wallet: Wallet,
        *,
        balance: Decimal,
        txn_type: TransactionType,
        txn_status: TransactionStatus,
        amount: Decimal,
        description: str,
        booking_id: str | None = None,
        destination: str | None = None,
        **wallet_values,
    ) -> LedgerTransaction:
        now = self.clock()
        res = await session.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id, Wallet.version == wallet.version)
            .values(balance=balance, version=wallet.version + 1, **wallet_values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConcurrencyConflict(f"Wallet of worker {wallet.worker_id} changed concurrently")

        txn = LedgerTransaction(
            transaction_id=str(uuid.uuid4()),
            wallet_id=wallet.id,
            worker_id=wallet.worker_id,
            booking_id=booking_id,
            type=txn_type.value,
            status=txn_status.value,
            amount=amount,
            balance_after=balance,
            currency=wallet.currency,
            description=description,
            destination=destination,
            created_at=now,
            updated_at=now,
        )
        session.add(txn)
        await session.flush()
        return txn

    # ---- earnings ----

    async def _credit_earning(
        self, session: AsyncSession, wallet: Wallet, booking_id: str, amount: Decimal
    ) -> LedgerTransaction:
        return await self._mutate_wallet(
            session,
            wallet,
            balance=wallet.balance + amount,
            total_earnings=wallet.total_earnings + amount,
            txn_type=TransactionType.EARNING,
            txn_status=TransactionStatus.COMPLETED,
            amount=amount,
            booking_id=booking_id,
            description=f"Payment for booking {booking_id}",
        )

    async def settle_earning(self, worker_id: str, booking_id: str, amount) -> LedgerTransaction | None:
        """
        Credit ``amount`` to the worker. Returns None (a successful no-op) when
        amount <= 0. Not idempotent; see module docstring.
        """
        amount = to_money(amount)
        if amount <= 0:
            return None
        async with self.session_factory() as session, session.begin():
            wallet = await self._wallet(session, worker_id)
            txn = await self._credit_earning(session, wallet, booking_id, amount)
        logger.info("Settled %s to worker %s for booking %s", amount, worker_id, booking_id)
        return txn

    async def earning_for_booking(self, session: AsyncSession, booking_id: str) -> LedgerTransaction | None:
        res = await session.execute(
            select(LedgerTransaction).where(
                LedgerTransaction.booking_id == booking_id,
                LedgerTransaction.type == TransactionType.EARNING.value,
            )
        )
        return res.scalars().first()

    async def settle_booking_earning(self, worker_id: str, booking_id: str, amount) -> SettlementResult:
        """Idempotent per booking: a second call returns the first earning."""
        amount = to_money(amount)
        if amount <= 0:
            return SettlementResult(settled=True)
        async with self.session_factory() as session, session.begin():
            # wallet version first: an earning committed after this read fails the version check
            wallet = await self._wallet(session, worker_id)
            existing = await self.earning_for_booking(session, booking_id)
            if existing:
                logger.info("Booking %s already settled by %s", booking_id, existing.transaction_id)
                return SettlementResult(settled=True, transaction=existing, already_settled=True)
            txn = await self._credit_earning(session, wallet, booking_id, amount)
        logger.info("Settled %s to worker %s for booking %s", amount, worker_id, booking_id)
        return SettlementResult(settled=True, transaction=txn)

    # ---- withdrawals ----

    async def withdraw(self, worker_id: str, amount, destination: str) -> LedgerTransaction:
        destination = (destination or "").strip()
        if not destination:
            raise ValidationFailed("destination account is required")
        amount = to_money(amount)

        async with self.session_factory() as session, session.begin():
            wallet = await self._wallet(session, worker_id)
            tz_name = await session.scalar(select(Worker.timezone).where(Worker.worker_id == worker_id))
            today = local_date(self.clock(), tz_name)

            violations = withdrawal_violations(wallet, amount, today)
            if violations:
                logger.info("Withdrawal by %s refused: %s", worker_id, [v.rule for v in violations])
                raise LedgerRuleViolation(violations)

            txn = await self._mutate_wallet(
                session,
                wallet,
                balance=wallet.balance - amount,
                total_withdrawals=wallet.total_withdrawals + amount,
                last_withdrawal_date=today,
                txn_type=TransactionType.WITHDRAWAL,
                txn_status=TransactionStatus.PENDING,
                amount=amount,
                destination=mask_destination(destination),
                description=f"Withdrawal to account ending in {destination[-4:]}",
            )
        logger.info("Withdrawal %s of %s requested by %s", txn.transaction_id, amount, worker_id)
        return txn

    async def confirm_withdrawal(
        self,
        transaction_id: str,
        succeeded: bool,
        reference: str | None = None,
        failure_reason: str | None = None,
    ) -> LedgerTransaction:
        """
        Out-of-band confirmation from the payment processor.
        pending -> completed, or pending -> failed with the amount refunded.
        Repeating the same outcome is a no-op.
        """
        target = TransactionStatus.COMPLETED if succeeded else TransactionStatus.FAILED

        async with self.session_factory() as session, session.begin():
            res = await session.execute(
                select(LedgerTransaction).where(LedgerTransaction.transaction_id == transaction_id)
            )
            txn = res.scalar_one_or_none()
            if not txn:
                raise NotFound(f"Transaction {transaction_id} not found")
            if txn.type != TransactionType.WITHDRAWAL.value:
                raise InvalidState(f"Transaction {transaction_id} is not a withdrawal")
            if txn.status == target.value:
                return txn
            if txn.status != TransactionStatus.PENDING.value:
                raise InvalidState(f"Withdrawal {transaction_id} is already {txn.status}")

            res = await session.execute(
                update(LedgerTransaction)
                .where(
                    LedgerTransaction.id == txn.id,
                    LedgerTransaction.status == TransactionStatus.PENDING.value,
                )
                .values(
                    status=target.value,
                    reference=reference,
                    failure_reason=None if succeeded else (failure_reason or "payout_failed"),
                    updated_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise ConcurrencyConflict(f"Withdrawal {transaction_id} confirmed concurrently")

            if not succeeded:
                wallet = await self._wallet(session, txn.worker_id)
                await self._mutate_wallet(
                    session,
                    wallet,
                    balance=wallet.balance + txn.amount,
                    total_withdrawals=wallet.total_withdrawals - txn.amount,
                    txn_type=TransactionType.REFUND,
                    txn_status=TransactionStatus.COMPLETED,
                    amount=txn.amount,
                    description=f"Refund of failed withdrawal {transaction_id}",
                )

            await session.refresh(txn)

        logger.info("Withdrawal %s confirmed as %s", transaction_id, target.value)
        return txn

    # ---- reads ----

    async def get_balance(self, worker_id: str) -> BalanceView:
        async with self.session_factory() as session:
            wallet = await self._wallet(session, worker_id)
            tz_name = await session.scalar(select(Worker.timezone).where(Worker.worker_id == worker_id))

        today = local_date(self.clock(), tz_name)
        return BalanceView(
            worker_id=worker_id,
            balance=wallet.balance,
            available_for_withdrawal=max(Decimal("0.00"), wallet.balance - wallet.minimum_reserve),
            total_earnings=wallet.total_earnings,
            total_withdrawals=wallet.total_withdrawals,
            minimum_reserve=wallet.minimum_reserve,
            currency=wallet.currency,
            last_withdrawal_date=wallet.last_withdrawal_date,
            can_withdraw_today=wallet.last_withdrawal_date != today,
        )

    async def get_transactions(
        self,
        worker_id: str,
        page: int = 1,
        limit: int = 20,
        txn_type: str | None = None,
        status: str | None = None,
    ) -> TransactionPage:
        if page < 1 or limit < 1:
            raise ValidationFailed("page and limit must be positive")
        if txn_type is not None and txn_type not in {t.value for t in TransactionType}:
            raise ValidationFailed(f"Unknown transaction type: {txn_type}")
        if status is not None and status not in {s.value for s in TransactionStatus}:
            raise ValidationFailed(f"Unknown transaction status: {status}")

        filters = [LedgerTransaction.worker_id == worker_id]
        if txn_type:
            filters.append(LedgerTransaction.type == txn_type)
        if status:
            filters.append(LedgerTransaction.status == status)

        async with self.session_factory() as session:
            await self._wallet(session, worker_id)
            total = await session.scalar(select(func.count(LedgerTransaction.id)).where(*filters))
            res = await session.execute(
                select(LedgerTransaction)
                .where(*filters)
                .order_by(LedgerTransaction.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            transactions = list(res.scalars())

        return TransactionPage(
            transactions=transactions,
            current_page=page,
            total_pages=math.ceil(total / limit) if total else 0,
            total=total,
        )

    async def transactions_for_booking(self, booking_id: str) -> list[LedgerTransaction]:
        async with self.session_factory() as session:
            res = await session.execute(
                select(LedgerTransaction)
                .where(LedgerTransaction.booking_id == booking_id)
                .order_by(LedgerTransaction.id)
            )
            return list(res.scalars())
