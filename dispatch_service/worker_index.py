from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import MAX_CANDIDATES
from .geo import GeoPoint
from .models import Availability, Worker


def norm(s: str) -> str:
    return (s or "").strip().lower()


@dataclass(frozen=True)
class Candidate:
    worker: Worker
    distance_m: float

    @property
    def worker_id(self) -> str:
        return self.worker.worker_id


class WorkerIndex:
    """
    Nearest-first lookup of dispatchable workers.

    A bounding box on the indexed latitude/longitude columns narrows the rows
    read from the database; exact great-circle distance then filters and
    orders them. Ties are broken by worker id so results are deterministic.
    """

    def __init__(self, max_candidates: int = MAX_CANDIDATES):
        self.max_candidates = max_candidates

    async def find_candidates(
        self,
        session: AsyncSession,
        point: GeoPoint,
        max_distance_m: float,
        required_skill: str,
        excluded_worker_ids: Iterable[str] = (),
        limit: int | None = None,
    ) -> list[Candidate]:
        limit = self.max_candidates if limit is None else limit
        if limit <= 0 or max_distance_m < 0:
            return []

        skill = norm(required_skill)
        excluded = set(excluded_worker_ids)
        min_lat, max_lat, min_lon, max_lon = point.bounding_box(max_distance_m)

        stmt = select(Worker).where(
            Worker.availability == Availability.AVAILABLE.value,
            Worker.active_booking_id.is_(None),
            Worker.latitude.is_not(None),
            Worker.longitude.is_not(None),
            Worker.latitude.between(min_lat, max_lat),
            Worker.longitude.between(min_lon, max_lon),
        )
        if excluded:
            stmt = stmt.where(Worker.worker_id.not_in(excluded))

        result = await session.execute(stmt)

        candidates = []
        for worker in result.scalars():
            if skill not in {norm(s) for s in (worker.skills or [])}:
                continue
            distance = point.distance_to(GeoPoint(worker.longitude, worker.latitude))
            if distance > max_distance_m:
                continue
            candidates.append(Candidate(worker=worker, distance_m=distance))

        candidates.sort(key=lambda c: (c.distance_m, c.worker.worker_id))
        return candidates[:limit]
