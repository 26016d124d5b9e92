"""Process settings loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_weights() -> dict[str, float]:
    return {
        "distance": 0.30,
        "price": 0.15,
        "rating": 0.30,
        "reliability": 0.25,
    }


@dataclass(frozen=True)
class Settings:
    app_name: str = "Smart Match Assignment Engine"
    app_version: str = "1.0.0"
    log_level: str = "INFO"

    database_path: Path = Path("data/smartmatch.db")
    database_busy_timeout_seconds: float = 10.0
    seed_demo_data: bool = True

    operator_token: str | None = None

    # First MatchingConfig version; later versions live in the store.
    matching_distance_max_km: float = 20.0
    matching_weights: dict[str, float] = field(default_factory=_default_weights)
    matching_team_bonus_two: float = 0.02
    matching_team_bonus_three_plus: float = 0.05
    matching_fanout_size: int = 3
    matching_invitation_ttl_minutes: int = 15
    matching_max_retry_attempts: int = 3
    matching_fallback_threshold: int = 2
    matching_distance_relaxation_factor: float = 1.5
    matching_short_notice_hours: int = 48
    matching_escalation_deadline_hours: int = 24
    matching_rating_credibility_reviews: int = 10

    matching_preview_limit: int = 10
    matching_retry_interval_minutes: int = 5

    oracle_area_distance_km: float = 10.0
    oracle_minimum_duration_minutes: int = 15

    team_solver_max_time_seconds: float = 5.0
    team_solver_workers: int = 1
    team_solver_random_seed: int = 7
    team_objective_scale: int = 1000

    sweep_enabled: bool = True
    sweep_interval_seconds: float = 60.0
    sweep_batch_size: int = 100

    guardrail_default_range_days: int = 30
    guardrail_decline_min_responses: int = 3
    guardrail_decline_ratio: float = 0.7
    guardrail_provider_cancellation_min: int = 2
    guardrail_client_draft_min: int = 3
    guardrail_client_cancellation_min: int = 2

    policy_berlin_postal_prefix: str = "10"
    policy_weekend_freelancer_daily_cap: int = 2
    scenario_standard_lead_hours: float = 48.0
    scenario_urgent_lead_hours: float = 24.0
    scenario_special_categories: tuple[str, ...] = (
        "final",
        "construction",
        "move_out",
        "spring",
        "cluttered",
        "industrial",
        "pigeon_cleanup",
        "upholstery",
    )

    history_page_size: int = 25
    history_max_page_size: int = 100


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests derive copies with `replace`."""
    operator_token = os.getenv("OPERATOR_TOKEN") or None
    return Settings(
        app_name=_env_str("APP_NAME", Settings.app_name),
        app_version=_env_str("APP_VERSION", Settings.app_version),
        log_level=_env_str("LOG_LEVEL", Settings.log_level),
        database_path=Path(_env_str("DATABASE_PATH", str(Settings.database_path))),
        database_busy_timeout_seconds=_env_float(
            "DATABASE_BUSY_TIMEOUT_SECONDS", Settings.database_busy_timeout_seconds
        ),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", Settings.seed_demo_data),
        operator_token=operator_token,
        matching_distance_max_km=_env_float(
            "MATCHING_DISTANCE_MAX_KM", Settings.matching_distance_max_km
        ),
        matching_fanout_size=_env_int("MATCHING_FANOUT_SIZE", Settings.matching_fanout_size),
        matching_invitation_ttl_minutes=_env_int(
            "MATCHING_INVITATION_TTL_MINUTES", Settings.matching_invitation_ttl_minutes
        ),
        matching_max_retry_attempts=_env_int(
            "MATCHING_MAX_RETRY_ATTEMPTS", Settings.matching_max_retry_attempts
        ),
        matching_fallback_threshold=_env_int(
            "MATCHING_FALLBACK_THRESHOLD", Settings.matching_fallback_threshold
        ),
        matching_retry_interval_minutes=_env_int(
            "MATCHING_RETRY_INTERVAL_MINUTES", Settings.matching_retry_interval_minutes
        ),
        sweep_enabled=_env_bool("SWEEP_ENABLED", Settings.sweep_enabled),
        sweep_interval_seconds=_env_float(
            "SWEEP_INTERVAL_SECONDS", Settings.sweep_interval_seconds
        ),
        guardrail_default_range_days=_env_int(
            "GUARDRAIL_DEFAULT_RANGE_DAYS", Settings.guardrail_default_range_days
        ),
        policy_weekend_freelancer_daily_cap=_env_int(
            "POLICY_WEEKEND_FREELANCER_DAILY_CAP", Settings.policy_weekend_freelancer_daily_cap
        ),
    )
