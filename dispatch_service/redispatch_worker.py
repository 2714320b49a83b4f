import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from .config import REDISPATCH_BATCH, REDISPATCH_INTERVAL_SECONDS
from .dispatcher import DispatchOutcome
from .service import DispatchService, get_service

logger = logging.getLogger(__name__)


async def redispatch_tick(service: DispatchService, batch: int = REDISPATCH_BATCH) -> int:
    """Run one sweep over pending bookings. Returns how many were assigned."""
    results = await service.redispatch_pending(batch)
    assigned = sum(1 for r in results if r.outcome == DispatchOutcome.ASSIGNED)
    if results:
        logger.info("Re-dispatch sweep: %d pending, %d assigned", len(results), assigned)
    return assigned


async def redispatch_loop(
    stop_event: asyncio.Event,
    service: DispatchService | None = None,
    interval: float = REDISPATCH_INTERVAL_SECONDS,
    batch: int = REDISPATCH_BATCH,
):
    service = service or get_service()
    while not stop_event.is_set():
        try:
            await redispatch_tick(service, batch)
        except SQLAlchemyError:
            # database unavailable; next tick retries
            logger.exception("Re-dispatch sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
