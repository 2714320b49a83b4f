from dataclasses import asdict

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException

from .dispatcher import DispatchResult
from .geo import GeoPoint
from .lifecycle import TransitionResult
from .models import Booking, LedgerTransaction, Worker
from .schemas import (
    AssignmentEntry,
    BalanceResponse,
    BookingEventEntry,
    BookingResponse,
    CancelRequest,
    ConfirmWithdrawalRequest,
    CreateBookingRequest,
    DispatchResponse,
    Pagination,
    RegisterWorker,
    RejectionEntry,
    RejectRequest,
    SettlementResponse,
    StatsResponse,
    TransactionListResponse,
    TransactionResponse,
    TransitionResponse,
    UpdateAvailability,
    UpdateLocation,
    UpdateStatusRequest,
    WithdrawRequest,
    WorkerResponse,
)
from .service import DispatchService, get_service

router = APIRouter()


async def current_user(x_user_sub: str | None = Header(default=None)) -> str:
    # set by the gateway after token verification
    if not x_user_sub:
        raise HTTPException(status_code=401, detail="Missing X-User-Sub header")
    return x_user_sub


def worker_response(worker: Worker) -> WorkerResponse:
    return WorkerResponse(
        worker_id=worker.worker_id,
        name=worker.name,
        skills=worker.skills,
        latitude=worker.latitude,
        longitude=worker.longitude,
        timezone=worker.timezone,
        availability=worker.availability,
        active_booking_id=worker.active_booking_id,
        rating=worker.rating,
        completed_jobs=worker.completed_jobs,
        last_location_update=worker.last_location_update,
    )


def booking_response(booking: Booking, with_history: bool = False) -> BookingResponse:
    resp = BookingResponse(
        booking_id=booking.booking_id,
        requester_id=booking.requester_id,
        skill=booking.skill,
        description=booking.description,
        latitude=booking.latitude,
        longitude=booking.longitude,
        scheduled_time=booking.scheduled_time,
        priority=booking.priority,
        status=booking.status,
        assigned_worker_id=booking.assigned_worker_id,
        estimated_cost=booking.estimated_cost,
        final_cost=booking.final_cost,
        currency=booking.currency,
        notes=booking.notes,
        dispatch_note=booking.dispatch_note,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
        completed_at=booking.completed_at,
        cancelled_at=booking.cancelled_at,
        cancellation_reason=booking.cancellation_reason,
        cancelled_by=booking.cancelled_by,
    )
    if with_history:
        resp.rejections = [
            RejectionEntry(worker_id=r.worker_id, reason=r.reason, created_at=r.created_at)
            for r in booking.rejections
        ]
        resp.assignments = [
            AssignmentEntry(worker_id=a.worker_id, status=a.status, created_at=a.created_at)
            for a in booking.assignments
        ]
        resp.events = [
            BookingEventEntry(kind=e.kind, detail=e.detail, created_at=e.created_at)
            for e in booking.events
        ]
    return resp


def dispatch_response(result: DispatchResult) -> DispatchResponse:
    return DispatchResponse(
        booking_id=result.booking_id,
        outcome=result.outcome.value,
        worker_id=result.worker_id,
        distance_m=result.distance_m,
        message=result.message,
    )


def transition_response(result: TransitionResult) -> TransitionResponse:
    settlement = None
    if result.settlement is not None or result.settlement_error is not None:
        txn = result.settlement.transaction if result.settlement else None
        settlement = SettlementResponse(
            settled=bool(result.settlement and result.settlement.settled),
            already_settled=bool(result.settlement and result.settlement.already_settled),
            transaction_id=txn.transaction_id if txn else None,
            error=result.settlement_error,
        )
    return TransitionResponse(
        booking_id=result.booking_id,
        status=result.status.value,
        worker_id=result.worker_id,
        reassignment=dispatch_response(result.reassignment) if result.reassignment else None,
        settlement=settlement,
    )


def transaction_response(txn: LedgerTransaction) -> TransactionResponse:
    return TransactionResponse(
        transaction_id=txn.transaction_id,
        type=txn.type,
        status=txn.status,
        amount=txn.amount,
        balance_after=txn.balance_after,
        currency=txn.currency,
        description=txn.description,
        booking_id=txn.booking_id,
        destination=txn.destination,
        reference=txn.reference,
        failure_reason=txn.failure_reason,
        created_at=txn.created_at,
        updated_at=txn.updated_at,
    )


# ---- workers ----

@router.post("/workers", response_model=WorkerResponse)
async def register_worker(
    data: RegisterWorker,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    location = None
    if data.latitude is not None or data.longitude is not None:
        if data.latitude is None or data.longitude is None:
            raise HTTPException(status_code=422, detail="latitude and longitude must be given together")
        location = GeoPoint(data.longitude, data.latitude)

    worker = await service.register_worker(user, data.name, data.skills, location, data.timezone)
    return worker_response(worker)


@router.get("/workers/me", response_model=WorkerResponse)
async def get_me(user: str = Depends(current_user), service: DispatchService = Depends(get_service)):
    return worker_response(await service.get_worker(user))


@router.put("/workers/me/location", response_model=WorkerResponse)
async def update_location(
    data: UpdateLocation,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    worker = await service.update_location(user, GeoPoint(data.longitude, data.latitude))
    return worker_response(worker)


@router.put("/workers/me/availability", response_model=WorkerResponse)
async def update_availability(
    data: UpdateAvailability,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    return worker_response(await service.set_availability(user, data.availability))


@router.get("/workers/me/bookings", response_model=list[BookingResponse])
async def my_bookings(user: str = Depends(current_user), service: DispatchService = Depends(get_service)):
    return [booking_response(b) for b in await service.active_bookings(user)]


# ---- bookings ----

@router.post("/bookings", response_model=BookingResponse)
async def create_booking(
    data: CreateBookingRequest,
    background_tasks: BackgroundTasks,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    booking = await service.create_booking(
        requester_id=user,
        skill=data.skill,
        description=data.description,
        location=GeoPoint(data.longitude, data.latitude),
        scheduled_time=data.scheduled_time,
        priority=data.priority,
        estimated_cost=data.estimated_cost,
    )
    background_tasks.add_task(service.dispatch_in_background, booking.booking_id)
    return booking_response(booking)


@router.get("/bookings/stats", response_model=StatsResponse)
async def booking_stats(service: DispatchService = Depends(get_service)):
    return StatsResponse(**await service.get_stats())


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    return booking_response(await service.view_booking(booking_id, user), with_history=True)


@router.post("/bookings/{booking_id}/accept", response_model=TransitionResponse)
async def accept_booking(
    booking_id: str,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    return transition_response(await service.accept(booking_id, user))


@router.post("/bookings/{booking_id}/reject", response_model=TransitionResponse)
async def reject_booking(
    booking_id: str,
    data: RejectRequest,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    return transition_response(await service.reject(booking_id, user, data.reason))


@router.put("/bookings/{booking_id}/status", response_model=TransitionResponse)
async def update_status(
    booking_id: str,
    data: UpdateStatusRequest,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    result = await service.update_status(booking_id, user, data.status, data.notes, data.final_cost)
    return transition_response(result)


@router.post("/bookings/{booking_id}/cancel", response_model=TransitionResponse)
async def cancel_booking(
    booking_id: str,
    data: CancelRequest,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    return transition_response(await service.cancel(booking_id, user, data.reason))


@router.post("/bookings/{booking_id}/dispatch", response_model=DispatchResponse)
async def dispatch_booking(booking_id: str, service: DispatchService = Depends(get_service)):
    return dispatch_response(await service.dispatch(booking_id))


@router.delete("/bookings/{booking_id}/rejections/{worker_id}")
async def readmit_worker(booking_id: str, worker_id: str, service: DispatchService = Depends(get_service)):
    removed = await service.readmit_worker(booking_id, worker_id)
    return {"booking_id": booking_id, "worker_id": worker_id, "removed": removed}


@router.post("/bookings/{booking_id}/settlement/retry", response_model=TransitionResponse)
async def retry_settlement(booking_id: str, service: DispatchService = Depends(get_service)):
    return transition_response(await service.retry_settlement(booking_id))


# ---- wallet ----

@router.get("/wallet/balance", response_model=BalanceResponse)
async def wallet_balance(user: str = Depends(current_user), service: DispatchService = Depends(get_service)):
    return BalanceResponse(**asdict(await service.get_balance(user)))


@router.get("/wallet/transactions", response_model=TransactionListResponse)
async def wallet_transactions(
    page: int = 1,
    limit: int = 20,
    type: str | None = None,
    status: str | None = None,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    result = await service.get_transactions(user, page, limit, type, status)
    return TransactionListResponse(
        transactions=[transaction_response(t) for t in result.transactions],
        pagination=Pagination(
            current_page=result.current_page,
            total_pages=result.total_pages,
            total=result.total,
            has_next=result.has_next,
            has_prev=result.has_prev,
        ),
    )


@router.post("/wallet/withdraw", response_model=TransactionResponse)
async def withdraw(
    data: WithdrawRequest,
    user: str = Depends(current_user),
    service: DispatchService = Depends(get_service),
):
    return transaction_response(await service.withdraw(user, data.amount, data.destination))


@router.post("/wallet/transactions/{transaction_id}/confirm", response_model=TransactionResponse)
async def confirm_withdrawal(
    transaction_id: str,
    data: ConfirmWithdrawalRequest,
    service: DispatchService = Depends(get_service),
):
    txn = await service.confirm_withdrawal(
        transaction_id, data.succeeded, data.reference, data.failure_reason
    )
    return transaction_response(txn)
