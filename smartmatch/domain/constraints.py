"""Domain-level validation rules for matching configuration and bookings."""

from __future__ import annotations

import math

from smartmatch.domain.models import (
    ECO_PREFERENCES,
    PROVIDER_KINDS,
    SCORING_FACTORS,
    BookingRequest,
    BookingStatus,
    MatchingConfig,
    ProviderCandidate,
)


ALLOWED_BOOKING_TRANSITIONS: dict[str, tuple[str, ...]] = {
    BookingStatus.DRAFT: (BookingStatus.PENDING_PROVIDER, BookingStatus.CANCELLED),
    BookingStatus.PENDING_PROVIDER: (
        BookingStatus.PENDING_CLIENT,
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    ),
    BookingStatus.PENDING_CLIENT: (
        BookingStatus.PENDING_PROVIDER,
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    ),
    BookingStatus.CONFIRMED: (
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.DISPUTED,
    ),
    BookingStatus.IN_PROGRESS: (
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.DISPUTED,
    ),
    BookingStatus.COMPLETED: (BookingStatus.DISPUTED,),
    BookingStatus.DISPUTED: (BookingStatus.COMPLETED, BookingStatus.CANCELLED),
    BookingStatus.CANCELLED: (),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_BOOKING_TRANSITIONS.get(from_status, ())


def validate_matching_config(config: MatchingConfig) -> None:
    if not math.isfinite(config.distance_max_km) or config.distance_max_km <= 0:
        raise ValueError("distance_max_km must be a positive number")
    unknown = sorted(set(config.weights) - set(SCORING_FACTORS))
    if unknown:
        raise ValueError(f"unknown scoring factors: {', '.join(unknown)}")
    for factor, weight in config.weights.items():
        if not math.isfinite(weight) or weight < 0:
            raise ValueError(f"weight for {factor} must be >= 0")
    if config.team_bonus_two < 0 or config.team_bonus_three_plus < 0:
        raise ValueError("team bonus values must be >= 0")
    if config.fanout_size <= 0:
        raise ValueError("fanout_size must be > 0")
    if config.invitation_ttl_minutes <= 0:
        raise ValueError("invitation_ttl_minutes must be > 0")
    if config.max_retry_attempts < 0:
        raise ValueError("max_retry_attempts must be >= 0")
    if config.fallback_threshold <= 0:
        raise ValueError("fallback_threshold must be > 0")
    if config.distance_relaxation_factor < 1.0:
        raise ValueError("distance_relaxation_factor must be >= 1")
    if config.short_notice_hours < 0:
        raise ValueError("short_notice_hours must be >= 0")
    if config.escalation_deadline_hours < 0:
        raise ValueError("escalation_deadline_hours must be >= 0")
    if config.rating_credibility_reviews <= 0:
        raise ValueError("rating_credibility_reviews must be > 0")


def validate_booking_request(booking: BookingRequest) -> None:
    if not booking.booking_id.strip():
        raise ValueError("booking_id must be non-empty")
    if not booking.service_category.strip():
        raise ValueError("service_category must be non-empty")
    if booking.eco_preference not in ECO_PREFERENCES:
        raise ValueError(f"eco_preference must be one of {', '.join(ECO_PREFERENCES)}")
    if booking.required_providers < 1:
        raise ValueError("required_providers must be >= 1")
    if booking.start_at.tzinfo is None or booking.end_at.tzinfo is None:
        raise ValueError("start_at and end_at must be timezone-aware")
    if booking.end_at <= booking.start_at:
        raise ValueError("end_at must be after start_at")
    if booking.status not in BookingStatus.ALL:
        raise ValueError(f"unknown booking status: {booking.status}")
    if booking.price_ceiling_cents is not None and booking.price_ceiling_cents <= 0:
        raise ValueError("price_ceiling_cents must be > 0 when provided")
    if (booking.latitude is None) != (booking.longitude is None):
        raise ValueError("latitude and longitude must be provided together")


def validate_provider_candidate(candidate: ProviderCandidate) -> None:
    if not candidate.provider_id.strip():
        raise ValueError("provider_id must be non-empty")
    if candidate.kind not in PROVIDER_KINDS:
        raise ValueError(f"provider kind must be one of {', '.join(PROVIDER_KINDS)}")
    if candidate.hourly_rate_cents < 0:
        raise ValueError("hourly_rate_cents must be >= 0")
    if candidate.rating_average is not None and not 0.0 <= candidate.rating_average <= 5.0:
        raise ValueError("rating_average must be between 0 and 5")
    if candidate.rating_count < 0:
        raise ValueError("rating_count must be >= 0")
    if candidate.reliability is not None and not 0.0 <= candidate.reliability <= 1.0:
        raise ValueError("reliability must be between 0 and 1")
