from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from smartmatch.domain.models import LockStatus, ProviderCandidate, ServiceZone, TimeWindow
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.matching_service import SmartMatchService
from smartmatch.services.slot_lock_service import LockNotFoundError
from smartmatch.utils.config import get_settings


BASE = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        seed_demo_data=False,
        sweep_enabled=False,
        operator_token=None,
    )


def _provider(provider_id: str) -> ProviderCandidate:
    return ProviderCandidate(
        provider_id=provider_id,
        kind="freelancer",
        service_categories=("standard",),
        hourly_rate_cents=2500,
        service_zones=(ServiceZone(name="Mitte", city="Berlin", district="Mitte"),),
        rating_average=4.5,
        rating_count=12,
        reliability=0.9,
    )


def _build_service(tmp_path, filename: str):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    for provider_id in ("prov-a", "prov-b"):
        repository.upsert_provider(_provider(provider_id))
    clock = FakeClock(BASE)
    service = SmartMatchService(repository=repository, settings=settings, clock=clock)
    return service, repository, clock


def _booking(service: SmartMatchService, booking_id: str, start_offset_hours: float = 120):
    start_at = BASE + timedelta(hours=start_offset_hours)
    return service.create_booking(
        booking_id=booking_id,
        service_category="standard",
        start_at=start_at,
        end_at=start_at + timedelta(hours=3),
        city="Berlin",
        client_id="client-1",
    )


def test_overlapping_acquire_conflicts(tmp_path):
    service, _, _ = _build_service(tmp_path, "lock_overlap.db")
    first = _booking(service, "bk-1")
    second = _booking(service, "bk-2", start_offset_hours=121)

    held = service.lock_service.acquire("prov-a", first.window, first.booking_id, ttl_minutes=15)
    clash = service.lock_service.acquire("prov-a", second.window, second.booking_id, ttl_minutes=15)

    assert held.ok
    assert held.lock.status == LockStatus.HELD
    assert not clash.ok
    assert clash.reason == "provider_slot_locked"
    assert clash.conflicting_lock_id == held.lock.lock_id


def test_adjacent_windows_and_other_providers_do_not_conflict(tmp_path):
    service, _, _ = _build_service(tmp_path, "lock_adjacent.db")
    first = _booking(service, "bk-1")
    second = _booking(service, "bk-2", start_offset_hours=123)

    assert service.lock_service.acquire("prov-a", first.window, first.booking_id, ttl_minutes=15).ok
    assert service.lock_service.acquire("prov-a", second.window, second.booking_id, ttl_minutes=15).ok
    assert service.lock_service.acquire("prov-b", first.window, second.booking_id, ttl_minutes=15).ok


def test_confirm_and_release_lifecycle(tmp_path):
    service, _, clock = _build_service(tmp_path, "lock_lifecycle.db")
    booking = _booking(service, "bk-1")
    held = service.lock_service.acquire("prov-a", booking.window, booking.booking_id, ttl_minutes=15)

    confirmed = service.lock_service.confirm(held.lock.lock_id)
    assert confirmed.ok
    assert confirmed.lock.status == LockStatus.CONFIRMED

    clock.advance(hours=1)
    released = service.lock_service.release(held.lock.lock_id)
    assert released.status == LockStatus.RELEASED
    assert released.released_at == clock.now

    again = service.lock_service.release(held.lock.lock_id)
    assert again.status == LockStatus.RELEASED
    assert again.released_at == released.released_at

    rejected = service.lock_service.confirm(held.lock.lock_id)
    assert not rejected.ok
    assert rejected.reason == "lock_released"


def test_confirm_expired_lock_is_rejected(tmp_path):
    service, _, clock = _build_service(tmp_path, "lock_expired_confirm.db")
    booking = _booking(service, "bk-1")
    held = service.lock_service.acquire("prov-a", booking.window, booking.booking_id, ttl_minutes=15)

    clock.advance(minutes=15)
    outcome = service.lock_service.confirm(held.lock.lock_id)

    assert not outcome.ok
    assert outcome.reason == "lock_expired"


def test_expired_unswept_lock_still_conflicts_until_sweep(tmp_path):
    service, _, clock = _build_service(tmp_path, "lock_unswept.db")
    first = _booking(service, "bk-1")
    second = _booking(service, "bk-2")
    held = service.lock_service.acquire("prov-a", first.window, first.booking_id, ttl_minutes=15)

    clock.advance(minutes=20)
    assert not service.lock_service.acquire("prov-a", second.window, second.booking_id, ttl_minutes=15).ok

    released = service.lock_service.sweep_expired()
    assert [lock.lock_id for lock in released] == [held.lock.lock_id]
    assert released[0].status == LockStatus.RELEASED
    assert service.lock_service.acquire("prov-a", second.window, second.booking_id, ttl_minutes=15).ok


def test_sweep_never_releases_confirmed_locks(tmp_path):
    service, _, clock = _build_service(tmp_path, "lock_sweep_confirmed.db")
    booking = _booking(service, "bk-1")
    confirmed = service.lock_service.acquire("prov-a", booking.window, booking.booking_id, ttl_minutes=15)
    service.lock_service.confirm(confirmed.lock.lock_id)
    held = service.lock_service.acquire("prov-b", booking.window, booking.booking_id, ttl_minutes=15)

    clock.advance(hours=2)
    released = service.lock_service.sweep_expired()

    assert [lock.lock_id for lock in released] == [held.lock.lock_id]
    statuses = {lock.provider_id: lock.status for lock in service.lock_service.list_for_booking("bk-1")}
    assert statuses == {"prov-a": LockStatus.CONFIRMED, "prov-b": LockStatus.RELEASED}


def test_unknown_lock_raises(tmp_path):
    service, _, _ = _build_service(tmp_path, "lock_unknown.db")
    with pytest.raises(LockNotFoundError):
        service.lock_service.confirm(999)
    with pytest.raises(LockNotFoundError):
        service.lock_service.release(999)


def test_concurrent_acquires_grant_exactly_one_lock(tmp_path):
    service, repository, _ = _build_service(tmp_path, "lock_concurrent.db")
    bookings = [_booking(service, f"bk-{index}") for index in range(8)]
    window = TimeWindow(start_at=bookings[0].start_at, end_at=bookings[0].end_at)
    barrier = threading.Barrier(len(bookings))
    outcomes = []
    outcomes_guard = threading.Lock()

    def worker(booking_id: str) -> None:
        barrier.wait()
        outcome = service.lock_service.acquire("prov-a", window, booking_id, ttl_minutes=15)
        with outcomes_guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(booking.booking_id,)) for booking in bookings]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(outcomes) == len(bookings)
    assert sum(1 for outcome in outcomes if outcome.ok) == 1
    assert all(outcome.reason == "provider_slot_locked" for outcome in outcomes if not outcome.ok)
    assert repository.list_locked_provider_ids(window) == {"prov-a"}


def test_losing_booking_excludes_locked_provider_from_ranking(tmp_path):
    service, _, _ = _build_service(tmp_path, "lock_ranking.db")
    first = _booking(service, "bk-1")
    second = _booking(service, "bk-2", start_offset_hours=121)

    assert service.lock_service.acquire("prov-a", first.window, first.booking_id, ttl_minutes=15).ok
    assert not service.lock_service.acquire("prov-a", second.window, second.booking_id, ttl_minutes=15).ok

    ranked = service.scoring_service.rank(second)
    assert [item.provider_id for item in ranked] == ["prov-b"]
