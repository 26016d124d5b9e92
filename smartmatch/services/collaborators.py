"""Provider directory, distance/price oracle and notification dispatch."""

from __future__ import annotations

import math
from typing import Optional, Protocol

from smartmatch.domain.models import (
    ECO_BIO,
    BookingRequest,
    Invitation,
    ProviderCandidate,
    TimeWindow,
)
from smartmatch.repository.data_repository import DataRepository
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger


logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


class ProviderDirectory(Protocol):
    def list_eligible_candidates(
        self,
        service_category: str,
        eco_preference: str,
        window: TimeWindow,
    ) -> list[ProviderCandidate]:
        ...


class DistancePriceOracle(Protocol):
    def distance_km(self, booking: BookingRequest, candidate: ProviderCandidate) -> Optional[float]:
        ...

    def price_estimate(self, booking: BookingRequest, candidate: ProviderCandidate) -> Optional[int]:
        ...


class NotificationDispatch(Protocol):
    def notify(self, provider_id: str, invitation: Invitation) -> None:
        ...


class RepositoryProviderDirectory:
    """Reads active providers from the store."""

    def __init__(self, repository: DataRepository) -> None:
        self._repository = repository

    def list_eligible_candidates(
        self,
        service_category: str,
        eco_preference: str,
        window: TimeWindow,
    ) -> list[ProviderCandidate]:
        del window
        return self._repository.list_provider_candidates(
            service_category=service_category,
            eco_required=eco_preference == ECO_BIO,
        )


def haversine_km(lat_a: float, lon_a: float, lat_b: float, lon_b: float) -> float:
    phi_a, phi_b = math.radians(lat_a), math.radians(lat_b)
    d_phi = phi_b - phi_a
    d_lambda = math.radians(lon_b - lon_a)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi_a) * math.cos(phi_b) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


class ZoneDistanceOracle:
    """Zone-aware distance plus hourly-rate price estimates.

    Distance resolution, first match wins:
    - booking and zone coordinates: haversine distance minus the zone radius
    - booking city matches a zone city, district or name: 0 km
    - booking city is one of the provider's service areas: a fixed area distance
    - booking has no city: 0 km
    - otherwise the provider does not serve the booking (infinite distance)
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    def distance_km(self, booking: BookingRequest, candidate: ProviderCandidate) -> Optional[float]:
        if booking.latitude is not None and booking.longitude is not None:
            located = [
                zone
                for zone in candidate.service_zones
                if zone.latitude is not None and zone.longitude is not None
            ]
            if located:
                return min(
                    max(
                        0.0,
                        haversine_km(booking.latitude, booking.longitude, zone.latitude, zone.longitude)
                        - (zone.radius_km or 0.0),
                    )
                    for zone in located
                )

        city = _normalize(booking.city)
        if not city:
            return 0.0
        for zone in candidate.service_zones:
            if city in {_normalize(zone.city), _normalize(zone.district), _normalize(zone.name)}:
                return 0.0
        if city in {_normalize(area) for area in candidate.service_areas}:
            return float(self._settings.oracle_area_distance_km)
        return math.inf

    def price_estimate(self, booking: BookingRequest, candidate: ProviderCandidate) -> Optional[int]:
        if candidate.hourly_rate_cents <= 0:
            return None
        minutes = max(
            booking.window.duration_minutes,
            float(self._settings.oracle_minimum_duration_minutes),
        )
        return int(round(candidate.hourly_rate_cents * minutes / 60.0))


class LoggingNotificationDispatch:
    """Records invitation notifications in the application log."""

    def notify(self, provider_id: str, invitation: Invitation) -> None:
        logger.info(
            "Invitation notification | provider_id=%s | invitation_id=%s | booking_id=%s | expires_at=%s",
            provider_id,
            invitation.invitation_id,
            invitation.booking_id,
            invitation.expires_at.isoformat(),
        )
