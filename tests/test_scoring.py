from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from smartmatch.domain.models import BookingRequest, ProviderCandidate
from smartmatch.services.config_service import default_matching_config
from smartmatch.services.scoring_service import score_candidates
from smartmatch.utils.config import get_settings


START = datetime(2026, 3, 7, 9, 0, tzinfo=timezone.utc)


def _booking(**overrides) -> BookingRequest:
    defaults = {
        "booking_id": "bk-score",
        "client_id": "client-1",
        "service_category": "standard",
        "eco_preference": "standard",
        "required_providers": 1,
        "city": "Berlin",
        "postal_code": None,
        "start_at": START,
        "end_at": START + timedelta(hours=3),
    }
    defaults.update(overrides)
    return BookingRequest(**defaults)


def _candidate(provider_id: str, **overrides) -> ProviderCandidate:
    defaults = {
        "provider_id": provider_id,
        "kind": "freelancer",
        "service_categories": ("standard",),
        "hourly_rate_cents": 2500,
        "offers_eco": False,
        "rating_average": 4.5,
        "rating_count": 20,
        "reliability": 0.9,
    }
    defaults.update(overrides)
    return ProviderCandidate(**defaults)


def _config(**overrides):
    return replace(default_matching_config(get_settings()), **overrides)


def test_single_candidate_score_matches_weighted_components() -> None:
    booking = _booking()
    pool = [_candidate("prov-a", rating_average=4.0, rating_count=5, reliability=0.9)]

    ranked = score_candidates(
        booking,
        pool,
        _config(),
        distances={"prov-a": 10.0},
        prices={"prov-a": 7500},
    )

    assert len(ranked) == 1
    breakdown = ranked[0].breakdown
    assert breakdown.distance == pytest.approx(0.5)
    assert breakdown.price == pytest.approx(1.0)
    assert breakdown.rating == pytest.approx(0.4)
    assert breakdown.reliability == pytest.approx(0.9)
    assert breakdown.team_bonus == 0.0
    assert ranked[0].score == pytest.approx(0.645)
    assert ranked[0].rank == 1


def test_ranking_is_deterministic_for_identical_inputs() -> None:
    booking = _booking()
    pool = [
        _candidate("prov-c", rating_count=3),
        _candidate("prov-a", rating_average=4.9, rating_count=40),
        _candidate("prov-b", hourly_rate_cents=1800, reliability=None),
    ]
    distances = {"prov-a": 4.0, "prov-b": 12.0, "prov-c": 1.0}
    prices = {"prov-a": 7500, "prov-b": 5400, "prov-c": 7200}

    first = score_candidates(booking, pool, _config(), distances=distances, prices=prices)
    second = score_candidates(booking, list(reversed(pool)), _config(), distances=distances, prices=prices)

    assert [item.provider_id for item in first] == [item.provider_id for item in second]
    assert [item.score for item in first] == pytest.approx([item.score for item in second])
    assert [item.rank for item in first] == [1, 2, 3]


def test_candidates_beyond_distance_ceiling_are_absent() -> None:
    booking = _booking()
    pool = [_candidate("prov-near"), _candidate("prov-far"), _candidate("prov-unserved")]

    ranked = score_candidates(
        booking,
        pool,
        _config(distance_max_km=20.0),
        distances={"prov-near": 19.9, "prov-far": 20.1, "prov-unserved": math.inf},
        prices={},
    )

    assert [item.provider_id for item in ranked] == ["prov-near"]


def test_relaxed_ceiling_override_readmits_candidates() -> None:
    booking = _booking()
    pool = [_candidate("prov-near"), _candidate("prov-far")]
    distances = {"prov-near": 5.0, "prov-far": 25.0}

    ranked = score_candidates(
        booking,
        pool,
        _config(distance_max_km=20.0),
        distances=distances,
        prices={},
        distance_max_km=30.0,
    )

    assert {item.provider_id for item in ranked} == {"prov-near", "prov-far"}


def test_category_eco_and_availability_filters() -> None:
    booking = _booking(eco_preference="bio")
    pool = [
        _candidate("prov-eco", offers_eco=True),
        _candidate("prov-plain", offers_eco=False),
        _candidate("prov-office", offers_eco=True, service_categories=("office",)),
        _candidate("prov-busy", offers_eco=True),
    ]

    ranked = score_candidates(
        booking,
        pool,
        _config(),
        distances={},
        prices={},
        unavailable_provider_ids={"prov-busy"},
    )

    assert [item.provider_id for item in ranked] == ["prov-eco"]


def test_missing_oracle_values_score_zero_but_keep_candidate() -> None:
    booking = _booking()
    pool = [_candidate("prov-a"), _candidate("prov-b")]

    ranked = score_candidates(
        booking,
        pool,
        _config(),
        distances={"prov-a": None, "prov-b": 0.0},
        prices={"prov-a": None, "prov-b": 6000},
    )

    by_id = {item.provider_id: item for item in ranked}
    assert set(by_id) == {"prov-a", "prov-b"}
    assert by_id["prov-a"].breakdown.distance == 0.0
    assert by_id["prov-a"].breakdown.price == 0.0
    assert by_id["prov-b"].breakdown.distance == pytest.approx(1.0)
    assert ranked[0].provider_id == "prov-b"


def test_price_uses_booking_ceiling_when_present() -> None:
    booking = _booking(price_ceiling_cents=10000)
    pool = [_candidate("prov-a"), _candidate("prov-b")]

    ranked = score_candidates(
        booking,
        pool,
        _config(),
        distances={},
        prices={"prov-a": 2500, "prov-b": 12000},
    )

    by_id = {item.provider_id: item for item in ranked}
    assert by_id["prov-a"].breakdown.price == pytest.approx(0.75)
    assert by_id["prov-b"].breakdown.price == 0.0


def test_price_min_max_normalization_without_ceiling() -> None:
    booking = _booking()
    pool = [_candidate("prov-a"), _candidate("prov-b"), _candidate("prov-c")]

    ranked = score_candidates(
        booking,
        pool,
        _config(),
        distances={},
        prices={"prov-a": 6000, "prov-b": 8000, "prov-c": 10000},
    )

    by_id = {item.provider_id: item for item in ranked}
    assert by_id["prov-a"].breakdown.price == pytest.approx(1.0)
    assert by_id["prov-b"].breakdown.price == pytest.approx(0.5)
    assert by_id["prov-c"].breakdown.price == pytest.approx(0.0)


def test_rating_is_damped_by_review_count() -> None:
    booking = _booking()
    pool = [
        _candidate("prov-new", rating_average=5.0, rating_count=2),
        _candidate("prov-veteran", rating_average=4.0, rating_count=50),
        _candidate("prov-unrated", rating_average=None, rating_count=0),
    ]

    ranked = score_candidates(booking, pool, _config(), distances={}, prices={})

    by_id = {item.provider_id: item for item in ranked}
    assert by_id["prov-new"].breakdown.rating == pytest.approx(0.2)
    assert by_id["prov-veteran"].breakdown.rating == pytest.approx(0.8)
    assert by_id["prov-unrated"].breakdown.rating == 0.0


def test_team_bonus_for_companies_and_large_teams() -> None:
    booking = _booking(required_providers=3)
    pool = [
        _candidate("prov-company", kind="company"),
        _candidate("prov-team", team_size=3),
        _candidate("prov-small-team", team_size=2),
    ]

    ranked = score_candidates(booking, pool, _config(), distances={}, prices={})

    by_id = {item.provider_id: item for item in ranked}
    assert by_id["prov-company"].breakdown.team_bonus == pytest.approx(0.05)
    assert by_id["prov-team"].breakdown.team_bonus == pytest.approx(0.05)
    assert by_id["prov-small-team"].breakdown.team_bonus == 0.0
    assert by_id["prov-company"].score > by_id["prov-small-team"].score


def test_two_provider_booking_uses_smaller_bonus() -> None:
    booking = _booking(required_providers=2)
    ranked = score_candidates(
        booking,
        [_candidate("prov-company", kind="company")],
        _config(),
        distances={},
        prices={},
    )
    assert ranked[0].breakdown.team_bonus == pytest.approx(0.02)


def test_zero_weights_score_everyone_zero() -> None:
    booking = _booking(required_providers=3)
    pool = [
        _candidate("prov-b", kind="company", rating_count=5),
        _candidate("prov-a", rating_count=5),
        _candidate("prov-c", rating_count=30),
    ]
    config = _config(weights={"distance": 0.0, "price": 0.0, "rating": 0.0, "reliability": 0.0})

    ranked = score_candidates(booking, pool, config, distances={}, prices={})

    assert all(item.score == 0.0 for item in ranked)
    assert [item.provider_id for item in ranked] == ["prov-c", "prov-a", "prov-b"]


def test_ties_break_on_rating_count_then_provider_id() -> None:
    booking = _booking()
    pool = [
        _candidate("prov-b", rating_count=20),
        _candidate("prov-a", rating_count=20),
        _candidate("prov-c", rating_count=25),
    ]
    config = _config(weights={"distance": 1.0})

    ranked = score_candidates(
        booking,
        pool,
        config,
        distances={"prov-a": 2.0, "prov-b": 2.0, "prov-c": 2.0},
        prices={},
    )

    assert [item.provider_id for item in ranked] == ["prov-c", "prov-a", "prov-b"]


def test_empty_pool_returns_empty_ranking() -> None:
    assert score_candidates(_booking(), [], _config(), distances={}, prices={}) == []
