"""Versioned matching configuration."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping, Optional

from smartmatch.domain.constraints import validate_matching_config
from smartmatch.domain.models import MatchingConfig
from smartmatch.repository.data_repository import DataRepository
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger
from smartmatch.utils.timeutils import Clock, utc_now


logger = get_logger(__name__)

_UPDATABLE_FIELDS = (
    "distance_max_km",
    "weights",
    "team_bonus_two",
    "team_bonus_three_plus",
    "fanout_size",
    "invitation_ttl_minutes",
    "max_retry_attempts",
    "fallback_threshold",
    "distance_relaxation_factor",
    "short_notice_hours",
    "escalation_deadline_hours",
    "rating_credibility_reviews",
)


class ConfigValidationError(Exception):
    """Raised when a proposed matching configuration is rejected."""


def default_matching_config(settings: Settings) -> MatchingConfig:
    """Version 0, derived from process settings until an operator stores one."""
    return MatchingConfig(
        version=0,
        distance_max_km=settings.matching_distance_max_km,
        weights=dict(settings.matching_weights),
        team_bonus_two=settings.matching_team_bonus_two,
        team_bonus_three_plus=settings.matching_team_bonus_three_plus,
        fanout_size=settings.matching_fanout_size,
        invitation_ttl_minutes=settings.matching_invitation_ttl_minutes,
        max_retry_attempts=settings.matching_max_retry_attempts,
        fallback_threshold=settings.matching_fallback_threshold,
        distance_relaxation_factor=settings.matching_distance_relaxation_factor,
        short_notice_hours=settings.matching_short_notice_hours,
        escalation_deadline_hours=settings.matching_escalation_deadline_hours,
        rating_credibility_reviews=settings.matching_rating_credibility_reviews,
    )


class MatchingConfigService:
    """Reads the latest config version and appends new ones."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock

    def current(self) -> MatchingConfig:
        stored = self._repository.get_latest_matching_config()
        if stored is None:
            return default_matching_config(self._settings)
        return stored

    def update(self, changes: Mapping[str, Any]) -> MatchingConfig:
        unknown = sorted(set(changes) - set(_UPDATABLE_FIELDS))
        if unknown:
            raise ConfigValidationError(f"unknown config fields: {', '.join(unknown)}")

        base = self.current()
        updates = {key: value for key, value in changes.items() if value is not None}
        if "weights" in updates:
            merged = dict(base.weights)
            merged.update({str(key): float(value) for key, value in updates["weights"].items()})
            updates["weights"] = merged
        candidate = replace(base, **updates)
        try:
            validate_matching_config(candidate)
        except ValueError as exc:
            raise ConfigValidationError(str(exc)) from exc

        stored = self._repository.insert_matching_config(candidate, now=self._clock())
        logger.info(
            "Matching config updated | version=%s | changed=%s",
            stored.version,
            ",".join(sorted(updates)) or "-",
        )
        return stored
