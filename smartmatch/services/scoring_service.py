"""Candidate scoring: eligibility filters, weighted components and ranking."""

from __future__ import annotations

import math
from typing import AbstractSet, Mapping, Optional

import numpy as np

from smartmatch.domain.models import (
    ECO_BIO,
    PROVIDER_COMPANY,
    SCORING_FACTORS,
    BookingRequest,
    MatchingConfig,
    ProviderCandidate,
    ScoreBreakdown,
    ScoredCandidate,
)
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.collaborators import (
    DistancePriceOracle,
    ProviderDirectory,
    RepositoryProviderDirectory,
    ZoneDistanceOracle,
)
from smartmatch.services.config_service import MatchingConfigService
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger


logger = get_logger(__name__)

_SCORE_DECIMALS = 9


def _is_eligible(booking: BookingRequest, candidate: ProviderCandidate) -> bool:
    if booking.service_category not in candidate.service_categories:
        return False
    if booking.eco_preference == ECO_BIO and not candidate.offers_eco:
        return False
    return True


def _team_bonus(booking: BookingRequest, candidate: ProviderCandidate, config: MatchingConfig) -> float:
    required = booking.required_providers
    if required < 2:
        return 0.0
    if candidate.kind != PROVIDER_COMPANY and candidate.team_size < required:
        return 0.0
    if required == 2:
        return config.team_bonus_two
    return config.team_bonus_three_plus


def _price_components(
    booking: BookingRequest,
    prices: list[Optional[int]],
) -> np.ndarray:
    known = np.array([np.nan if price is None else float(price) for price in prices], dtype=float)
    components = np.zeros(len(prices), dtype=float)
    mask = ~np.isnan(known)
    if not mask.any():
        return components

    if booking.price_ceiling_cents is not None:
        ceiling = float(booking.price_ceiling_cents)
        components[mask] = np.clip((ceiling - known[mask]) / ceiling, 0.0, 1.0)
        return components

    low = known[mask].min()
    high = known[mask].max()
    if high == low:
        components[mask] = 1.0
    else:
        components[mask] = (high - known[mask]) / (high - low)
    return components


def score_candidates(
    booking: BookingRequest,
    pool: list[ProviderCandidate],
    config: MatchingConfig,
    *,
    distances: Mapping[str, Optional[float]],
    prices: Mapping[str, Optional[int]],
    unavailable_provider_ids: AbstractSet[str] = frozenset(),
    distance_max_km: Optional[float] = None,
) -> list[ScoredCandidate]:
    """Rank eligible providers for a booking.

    `distances` and `prices` hold oracle answers keyed by provider id. A
    missing value (None) scores that component 0 but keeps the candidate;
    an infinite distance means the provider does not serve the booking.
    `distance_max_km` overrides the config ceiling for relaxed retry rounds.
    """

    ceiling = config.distance_max_km if distance_max_km is None else distance_max_km

    survivors: list[ProviderCandidate] = []
    for candidate in pool:
        if not _is_eligible(booking, candidate):
            continue
        if candidate.provider_id in unavailable_provider_ids:
            continue
        distance = distances.get(candidate.provider_id)
        if distance is not None and distance > ceiling:
            continue
        survivors.append(candidate)

    if not survivors:
        return []

    distance_values = [distances.get(candidate.provider_id) for candidate in survivors]
    distance_components = np.array(
        [0.0 if value is None else max(0.0, 1.0 - value / ceiling) for value in distance_values],
        dtype=float,
    )
    price_values = [prices.get(candidate.provider_id) for candidate in survivors]
    price_components = _price_components(booking, price_values)
    credibility = float(config.rating_credibility_reviews)
    rating_components = np.array(
        [
            0.0
            if candidate.rating_average is None
            else (candidate.rating_average / 5.0) * min(candidate.rating_count / credibility, 1.0)
            for candidate in survivors
        ],
        dtype=float,
    )
    reliability_components = np.array(
        [1.0 if candidate.reliability is None else float(candidate.reliability) for candidate in survivors],
        dtype=float,
    )

    components = {
        "distance": distance_components,
        "price": price_components,
        "rating": rating_components,
        "reliability": reliability_components,
    }
    weights = np.array([float(config.weights.get(factor, 0.0)) for factor in SCORING_FACTORS])
    weight_total = float(weights.sum())
    matrix = np.vstack([components[factor] for factor in SCORING_FACTORS])

    if weight_total > 0:
        base_scores = weights @ matrix / weight_total
        bonuses = np.array([_team_bonus(booking, candidate, config) for candidate in survivors])
    else:
        base_scores = np.zeros(len(survivors))
        bonuses = np.zeros(len(survivors))
    totals = base_scores + bonuses

    order = sorted(
        range(len(survivors)),
        key=lambda index: (
            -round(float(totals[index]), _SCORE_DECIMALS),
            -survivors[index].rating_count,
            survivors[index].provider_id,
        ),
    )

    ranked: list[ScoredCandidate] = []
    for rank, index in enumerate(order, start=1):
        candidate = survivors[index]
        distance = distance_values[index]
        ranked.append(
            ScoredCandidate(
                candidate=candidate,
                score=float(totals[index]),
                breakdown=ScoreBreakdown(
                    distance=float(distance_components[index]),
                    price=float(price_components[index]),
                    rating=float(rating_components[index]),
                    reliability=float(reliability_components[index]),
                    team_bonus=float(bonuses[index]),
                ),
                rank=rank,
                distance_km=None if distance is None else float(distance),
                price_estimate_cents=price_values[index],
            )
        )
    return ranked


class CandidateScoringService:
    """Gathers the pool, oracle answers, config and locked providers, then ranks."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        directory: Optional[ProviderDirectory] = None,
        oracle: Optional[DistancePriceOracle] = None,
        config_service: Optional[MatchingConfigService] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._directory = directory or RepositoryProviderDirectory(self._repository)
        self._oracle = oracle or ZoneDistanceOracle(self._settings)
        self._config_service = config_service or MatchingConfigService(
            repository=self._repository,
            settings=self._settings,
        )

    def _safe_distance(self, booking: BookingRequest, candidate: ProviderCandidate) -> Optional[float]:
        try:
            value = self._oracle.distance_km(booking, candidate)
        except Exception as exc:
            logger.warning(
                "Distance lookup failed | booking_id=%s | provider_id=%s | error=%s",
                booking.booking_id,
                candidate.provider_id,
                exc,
            )
            return None
        if value is None or (isinstance(value, float) and math.isnan(value)):
            return None
        return float(value)

    def _safe_price(self, booking: BookingRequest, candidate: ProviderCandidate) -> Optional[int]:
        try:
            value = self._oracle.price_estimate(booking, candidate)
        except Exception as exc:
            logger.warning(
                "Price estimate failed | booking_id=%s | provider_id=%s | error=%s",
                booking.booking_id,
                candidate.provider_id,
                exc,
            )
            return None
        return None if value is None else int(value)

    def rank(
        self,
        booking: BookingRequest,
        *,
        config: Optional[MatchingConfig] = None,
        distance_max_km: Optional[float] = None,
        exclude_provider_ids: AbstractSet[str] = frozenset(),
    ) -> list[ScoredCandidate]:
        config = config or self._config_service.current()
        pool = self._directory.list_eligible_candidates(
            booking.service_category,
            booking.eco_preference,
            booking.window,
        )
        distances = {candidate.provider_id: self._safe_distance(booking, candidate) for candidate in pool}
        prices = {candidate.provider_id: self._safe_price(booking, candidate) for candidate in pool}
        unavailable = set(self._repository.list_locked_provider_ids(booking.window))
        unavailable.update(exclude_provider_ids)

        ranked = score_candidates(
            booking,
            pool,
            config,
            distances=distances,
            prices=prices,
            unavailable_provider_ids=unavailable,
            distance_max_km=distance_max_km,
        )
        logger.info(
            "Candidates scored | booking_id=%s | config_version=%s | pool=%s | ranked=%s | distance_max_km=%.2f",
            booking.booking_id,
            config.version,
            len(pool),
            len(ranked),
            config.distance_max_km if distance_max_km is None else distance_max_km,
        )
        return ranked

    def preview(
        self,
        booking: BookingRequest,
        *,
        limit: Optional[int] = None,
        distance_max_km: Optional[float] = None,
    ) -> list[ScoredCandidate]:
        """Side-effect-free ranking for operator simulation."""
        ranked = self.rank(booking, distance_max_km=distance_max_km)
        return ranked[: limit or self._settings.matching_preview_limit]
