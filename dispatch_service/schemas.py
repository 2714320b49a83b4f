from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class RegisterWorker(BaseModel):
    name: str
    skills: list[str]
    latitude: float | None = None
    longitude: float | None = None
    timezone: str = "UTC"


class UpdateLocation(BaseModel):
    latitude: float
    longitude: float


class UpdateAvailability(BaseModel):
    availability: str


class WorkerResponse(BaseModel):
    worker_id: str
    name: str
    skills: list[str]
    latitude: float | None = None
    longitude: float | None = None
    timezone: str
    availability: str
    active_booking_id: str | None = None
    rating: float
    completed_jobs: int
    last_location_update: datetime | None = None


class CreateBookingRequest(BaseModel):
    skill: str
    description: str
    latitude: float
    longitude: float
    scheduled_time: datetime
    priority: str = "medium"
    estimated_cost: Decimal = Decimal("0")


class RejectRequest(BaseModel):
    reason: str | None = None


class UpdateStatusRequest(BaseModel):
    status: str
    notes: str | None = None
    final_cost: Decimal | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class RejectionEntry(BaseModel):
    worker_id: str
    reason: str
    created_at: datetime


class AssignmentEntry(BaseModel):
    worker_id: str
    status: str
    created_at: datetime


class BookingEventEntry(BaseModel):
    kind: str
    detail: dict
    created_at: datetime


class BookingResponse(BaseModel):
    booking_id: str
    requester_id: str
    skill: str
    description: str
    latitude: float
    longitude: float
    scheduled_time: datetime
    priority: str
    status: str
    assigned_worker_id: str | None = None
    estimated_cost: Decimal
    final_cost: Decimal | None = None
    currency: str
    notes: str | None = None
    dispatch_note: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    cancelled_by: str | None = None
    rejections: list[RejectionEntry] = Field(default_factory=list)
    assignments: list[AssignmentEntry] = Field(default_factory=list)
    events: list[BookingEventEntry] = Field(default_factory=list)


class DispatchResponse(BaseModel):
    booking_id: str
    outcome: str
    worker_id: str | None = None
    distance_m: float | None = None
    message: str


class SettlementResponse(BaseModel):
    settled: bool
    already_settled: bool = False
    transaction_id: str | None = None
    error: str | None = None


class TransitionResponse(BaseModel):
    booking_id: str
    status: str
    worker_id: str | None = None
    reassignment: DispatchResponse | None = None
    settlement: SettlementResponse | None = None


class StatsResponse(BaseModel):
    bookings: dict[str, int]
    workers: dict[str, int]


class WithdrawRequest(BaseModel):
    amount: Decimal
    destination: str


class ConfirmWithdrawalRequest(BaseModel):
    succeeded: bool
    reference: str | None = None
    failure_reason: str | None = None


class TransactionResponse(BaseModel):
    transaction_id: str
    type: str
    status: str
    amount: Decimal
    balance_after: Decimal
    currency: str
    description: str
    booking_id: str | None = None
    destination: str | None = None
    reference: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class BalanceResponse(BaseModel):
    worker_id: str
    balance: Decimal
    available_for_withdrawal: Decimal
    total_earnings: Decimal
    total_withdrawals: Decimal
    minimum_reserve: Decimal
    currency: str
    last_withdrawal_date: date | None = None
    can_withdraw_today: bool


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total: int
    has_next: bool
    has_prev: bool


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    pagination: Pagination
