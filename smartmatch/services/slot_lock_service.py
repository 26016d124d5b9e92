"""Slot locks guarding provider time windows against double-booking."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from smartmatch.domain.models import LockOutcome, SlotLock, TimeWindow
from smartmatch.repository.data_repository import DataRepository
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger
from smartmatch.utils.timeutils import Clock, utc_now


logger = get_logger(__name__)


class LockNotFoundError(Exception):
    """Raised when a slot lock id is unknown."""


class SlotLockService:
    """Acquire, confirm, release and sweep slot locks.

    Check-and-create runs inside one immediate transaction in the repository,
    so two callers racing for the same provider window cannot both win, even
    from separate processes sharing the database file.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock

    def acquire(
        self,
        provider_id: str,
        window: TimeWindow,
        booking_id: str,
        ttl_minutes: int,
        team_id: Optional[str] = None,
    ) -> LockOutcome:
        now = self._clock()
        outcome = self._repository.acquire_slot_lock(
            provider_id=provider_id,
            booking_id=booking_id,
            window=window,
            now=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            team_id=team_id,
        )
        if outcome.ok:
            logger.info(
                "Slot lock acquired | lock_id=%s | booking_id=%s | provider_id=%s | expires_at=%s",
                outcome.lock.lock_id,
                booking_id,
                provider_id,
                outcome.lock.expires_at.isoformat(),
            )
        else:
            logger.info(
                "Slot lock conflict | booking_id=%s | provider_id=%s | conflicting_lock_id=%s",
                booking_id,
                provider_id,
                outcome.conflicting_lock_id,
            )
        return outcome

    def confirm(self, lock_id: int) -> LockOutcome:
        outcome = self._repository.confirm_slot_lock(lock_id, now=self._clock())
        if outcome is None:
            raise LockNotFoundError(f"Slot lock {lock_id} not found")
        if not outcome.ok:
            logger.info("Slot lock confirm rejected | lock_id=%s | reason=%s", lock_id, outcome.reason)
        return outcome

    def release(self, lock_id: int) -> SlotLock:
        lock = self._repository.release_slot_lock(lock_id, now=self._clock())
        if lock is None:
            raise LockNotFoundError(f"Slot lock {lock_id} not found")
        return lock

    def list_for_booking(self, booking_id: str) -> list[SlotLock]:
        return self._repository.list_booking_locks(booking_id)

    def sweep_expired(self) -> list[SlotLock]:
        released = self._repository.sweep_expired_locks(
            now=self._clock(),
            limit=self._settings.sweep_batch_size,
        )
        for lock in released:
            logger.info(
                "Expired slot lock released | lock_id=%s | booking_id=%s | provider_id=%s",
                lock.lock_id,
                lock.booking_id,
                lock.provider_id,
            )
        return released
