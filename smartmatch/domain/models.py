"""Domain models for smart matching of bookings to providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional


class BookingStatus:
    DRAFT = "draft"
    PENDING_PROVIDER = "pending_provider"
    PENDING_CLIENT = "pending_client"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"

    ALL = (
        DRAFT,
        PENDING_PROVIDER,
        PENDING_CLIENT,
        CONFIRMED,
        IN_PROGRESS,
        COMPLETED,
        CANCELLED,
        DISPUTED,
    )
    POST_CONFIRMATION = (CONFIRMED, IN_PROGRESS)
    CLOSED = (COMPLETED, CANCELLED)
    SUCCESSFUL = (CONFIRMED, IN_PROGRESS, COMPLETED)


class InvitationStatus:
    PENDING = "pending"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"

    OUTSTANDING = (PENDING, VIEWED)
    TERMINAL = (ACCEPTED, DECLINED, EXPIRED)
    ALL = (PENDING, VIEWED, ACCEPTED, DECLINED, EXPIRED)


class LockStatus:
    HELD = "HELD"
    CONFIRMED = "CONFIRMED"
    RELEASED = "RELEASED"

    ACTIVE = (HELD, CONFIRMED)


ECO_STANDARD = "standard"
ECO_BIO = "bio"
ECO_PREFERENCES = (ECO_STANDARD, ECO_BIO)

PROVIDER_FREELANCER = "freelancer"
PROVIDER_COMPANY = "company"
PROVIDER_KINDS = (PROVIDER_FREELANCER, PROVIDER_COMPANY)

SCORING_FACTORS = ("distance", "price", "rating", "reliability")

HISTORY_ASSIGNED = "assigned"
HISTORY_UNASSIGNED = "unassigned"
HISTORY_RESULTS = (HISTORY_ASSIGNED, HISTORY_UNASSIGNED)


@dataclass(frozen=True)
class TimeWindow:
    start_at: datetime
    end_at: datetime

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start_at < other.end_at and other.start_at < self.end_at

    @property
    def duration_minutes(self) -> float:
        return (self.end_at - self.start_at).total_seconds() / 60.0


@dataclass(frozen=True)
class BookingRequest:
    booking_id: str
    client_id: Optional[str]
    service_category: str
    eco_preference: str
    required_providers: int
    city: Optional[str]
    postal_code: Optional[str]
    start_at: datetime
    end_at: datetime
    status: str = BookingStatus.PENDING_PROVIDER
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    price_ceiling_cents: Optional[int] = None
    matching_retry_count: int = 0
    short_notice: bool = False
    fallback_requested_at: Optional[datetime] = None
    fallback_escalated_at: Optional[datetime] = None
    fallback_team_candidate_id: Optional[int] = None
    last_matching_round_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(start_at=self.start_at, end_at=self.end_at)


@dataclass(frozen=True)
class ServiceZone:
    name: str
    city: Optional[str] = None
    district: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_km: Optional[float] = None


@dataclass(frozen=True)
class ProviderCandidate:
    provider_id: str
    kind: str
    service_categories: tuple[str, ...]
    hourly_rate_cents: int
    offers_eco: bool = False
    service_areas: tuple[str, ...] = ()
    service_zones: tuple[ServiceZone, ...] = ()
    rating_average: Optional[float] = None
    rating_count: int = 0
    reliability: Optional[float] = None
    team_size: int = 0


@dataclass(frozen=True)
class TeamMember:
    provider_id: str
    is_lead: bool = False
    order_index: int = 0


@dataclass(frozen=True)
class ProviderTeam:
    team_id: str
    name: str
    preferred_size: int
    members: tuple[TeamMember, ...]
    service_categories: tuple[str, ...] = ()
    is_active: bool = True

    def ordered_member_ids(self) -> list[str]:
        ordered = sorted(
            self.members,
            key=lambda member: (not member.is_lead, member.order_index, member.provider_id),
        )
        return [member.provider_id for member in ordered]


@dataclass(frozen=True)
class MatchingConfig:
    """One immutable version of the tunable matching parameters."""

    version: int
    distance_max_km: float
    weights: Mapping[str, float]
    team_bonus_two: float
    team_bonus_three_plus: float
    fanout_size: int
    invitation_ttl_minutes: int
    max_retry_attempts: int
    fallback_threshold: int
    distance_relaxation_factor: float
    short_notice_hours: int
    escalation_deadline_hours: int
    rating_credibility_reviews: int
    created_at: Optional[datetime] = None

    def relaxed_distance_km(self, retry_count: int) -> float:
        if retry_count <= 0:
            return self.distance_max_km
        return self.distance_max_km * (self.distance_relaxation_factor**retry_count)


@dataclass(frozen=True)
class ScoreBreakdown:
    distance: float
    price: float
    rating: float
    reliability: float
    team_bonus: float

    def to_dict(self) -> dict[str, float]:
        return {
            "distance": self.distance,
            "price": self.price,
            "rating": self.rating,
            "reliability": self.reliability,
            "team_bonus": self.team_bonus,
        }


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: ProviderCandidate
    score: float
    breakdown: ScoreBreakdown
    rank: int
    distance_km: Optional[float]
    price_estimate_cents: Optional[int]

    @property
    def provider_id(self) -> str:
        return self.candidate.provider_id


@dataclass(frozen=True)
class SlotLock:
    lock_id: int
    booking_id: str
    provider_id: Optional[str]
    team_id: Optional[str]
    status: str
    slot_start_at: datetime
    slot_end_at: datetime
    created_at: datetime
    expires_at: datetime
    released_at: Optional[datetime] = None

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(start_at=self.slot_start_at, end_at=self.slot_end_at)


@dataclass(frozen=True)
class Invitation:
    invitation_id: int
    booking_id: str
    provider_id: str
    lock_id: Optional[int]
    status: str
    created_at: datetime
    expires_at: datetime
    viewed_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_outstanding(self) -> bool:
        return self.status in InvitationStatus.OUTSTANDING


@dataclass(frozen=True)
class Assignment:
    assignment_id: int
    booking_id: str
    provider_id: str
    source: str
    created_at: datetime
    team_id: Optional[str] = None


@dataclass(frozen=True)
class FallbackTeamCandidate:
    candidate_id: int
    booking_id: str
    team_id: str
    name: str
    preferred_size: int
    member_ids: tuple[str, ...]
    total_score: float
    created_at: datetime


@dataclass(frozen=True)
class LockOutcome:
    status: str
    lock: Optional[SlotLock] = None
    reason: Optional[str] = None
    conflicting_lock_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == "acquired"


@dataclass(frozen=True)
class InvitationOutcome:
    status: str
    invitation: Optional[Invitation] = None
    assignment: Optional[Assignment] = None
    reason: Optional[str] = None
    superseded_invitation_ids: tuple[int, ...] = ()
    exhausted: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(frozen=True)
class IssueResult:
    booking_id: str
    invitations: list[Invitation]
    lock_conflicts: list[str]
    skipped_outstanding: list[str]
    outstanding: int = 0

    @property
    def exhausted(self) -> bool:
        return not self.invitations and not self.outstanding


@dataclass(frozen=True)
class EscalationDecision:
    booking_id: str
    retry_count: int
    reissue: bool
    distance_max_km: float
    fallback_requested: bool
    fallback_escalated: bool
    fallback_team: Optional[FallbackTeamCandidate] = None
    newly_escalated: bool = False


@dataclass(frozen=True)
class ForceAssignOutcome:
    status: str
    booking_id: str
    assignments: list[Assignment] = field(default_factory=list)
    reason: Optional[str] = None
    conflicting_provider_ids: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(frozen=True)
class FallbackQueueEntry:
    booking: BookingRequest
    assigned_count: int
    fallback_team: Optional[FallbackTeamCandidate]


@dataclass(frozen=True)
class GuardrailCase:
    entity_id: str
    count: int
    last_event_at: Optional[datetime]
    ratio: Optional[float] = None


@dataclass(frozen=True)
class Guardrail:
    guardrail_id: str
    target: str
    threshold: str
    cases: list[GuardrailCase]


@dataclass(frozen=True)
class GuardrailReport:
    period_start: datetime
    period_end: datetime
    guardrails: list[Guardrail]


@dataclass(frozen=True)
class SweepReport:
    locks_released: int = 0
    invitations_expired: int = 0
    superseded_cleaned: int = 0
    retries: int = 0
    escalations: int = 0


@dataclass(frozen=True)
class PolicyMetric:
    policy_id: str
    policy_type: str
    scope: str
    impacted_bookings: int
    compliance_rate: Optional[float]
    breaches: int
    highlights: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScenarioMetric:
    scenario_id: str
    conditions: str
    bookings: int
    success_rate: float
    avg_invitations: Optional[float]
    avg_lead_hours: Optional[float]


@dataclass(frozen=True)
class PolicyReport:
    period_start: datetime
    period_end: datetime
    policies: list[PolicyMetric]


@dataclass(frozen=True)
class ScenarioReport:
    period_start: datetime
    period_end: datetime
    scenarios: list[ScenarioMetric]


@dataclass(frozen=True)
class InvitationSummary:
    total: int = 0
    accepted: int = 0
    declined: int = 0
    expired: int = 0
    pending: int = 0


@dataclass(frozen=True)
class HistoryItem:
    booking_id: str
    created_at: datetime
    start_at: datetime
    service_category: str
    city: Optional[str]
    postal_code: Optional[str]
    status: str
    result: str
    provider_id: Optional[str]
    invitations: InvitationSummary
    required_providers: int
    short_notice: bool
    last_invitation_at: Optional[datetime]


@dataclass(frozen=True)
class HistoryPage:
    items: list[HistoryItem]
    page: int
    page_size: int
    total: int
