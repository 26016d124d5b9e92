"""Smart Match orchestration: booking lifecycle, matching rounds and sweeps."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence
from uuid import uuid4

from smartmatch.domain.constraints import can_transition, validate_booking_request
from smartmatch.domain.models import (
    Assignment,
    BookingRequest,
    BookingStatus,
    EscalationDecision,
    ForceAssignOutcome,
    Invitation,
    InvitationOutcome,
    IssueResult,
    MatchingConfig,
    ScoredCandidate,
    SlotLock,
    SweepReport,
)
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.collaborators import (
    DistancePriceOracle,
    NotificationDispatch,
    ProviderDirectory,
)
from smartmatch.services.config_service import MatchingConfigService
from smartmatch.services.escalation_service import EscalationService
from smartmatch.services.invitation_service import InvitationService
from smartmatch.services.scoring_service import CandidateScoringService
from smartmatch.services.slot_lock_service import SlotLockService
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger
from smartmatch.utils.timeutils import Clock, ensure_utc, utc_now


logger = get_logger(__name__)

CANCELLING_ACTORS = ("client", "provider", "operator")


class BookingNotFoundError(Exception):
    """Raised when a booking id is unknown."""


class BookingValidationError(Exception):
    """Raised when booking input is rejected before any mutation."""


class BookingStateError(Exception):
    """Raised when a booking is not in a status that allows the operation."""


@dataclass(frozen=True)
class RespondResult:
    outcome: InvitationOutcome
    escalation: Optional[EscalationDecision] = None
    reissue: Optional[IssueResult] = None


@dataclass(frozen=True)
class BookingDetail:
    booking: BookingRequest
    invitations: list[Invitation]
    assignments: list[Assignment]
    locks: list[SlotLock]


class SmartMatchService:
    """Runs matching rounds and owns the booking-level transitions around them."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        directory: Optional[ProviderDirectory] = None,
        oracle: Optional[DistancePriceOracle] = None,
        dispatch: Optional[NotificationDispatch] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock
        self.config_service = MatchingConfigService(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
        )
        self.scoring_service = CandidateScoringService(
            repository=self._repository,
            settings=self._settings,
            directory=directory,
            oracle=oracle,
            config_service=self.config_service,
        )
        self.lock_service = SlotLockService(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
        )
        self.invitation_service = InvitationService(
            repository=self._repository,
            settings=self._settings,
            lock_service=self.lock_service,
            dispatch=dispatch,
            clock=clock,
        )
        self.escalation_service = EscalationService(
            repository=self._repository,
            settings=self._settings,
            scoring_service=self.scoring_service,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str) -> BookingRequest:
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        return booking

    def booking_detail(self, booking_id: str) -> BookingDetail:
        booking = self.get_booking(booking_id)
        return BookingDetail(
            booking=booking,
            invitations=self._repository.list_booking_invitations(booking_id),
            assignments=self._repository.list_booking_assignments(booking_id),
            locks=self._repository.list_booking_locks(booking_id),
        )

    def create_booking(
        self,
        *,
        service_category: str,
        start_at: datetime,
        end_at: datetime,
        required_providers: int = 1,
        eco_preference: str = "standard",
        client_id: Optional[str] = None,
        city: Optional[str] = None,
        postal_code: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        price_ceiling_cents: Optional[int] = None,
        short_notice: bool = False,
        draft: bool = False,
        booking_id: Optional[str] = None,
    ) -> BookingRequest:
        now = self._clock()
        start_at = ensure_utc(start_at)
        end_at = ensure_utc(end_at)
        config = self.config_service.current()
        booking = BookingRequest(
            booking_id=booking_id or uuid4().hex,
            client_id=client_id,
            service_category=service_category,
            eco_preference=eco_preference,
            required_providers=required_providers,
            city=city,
            postal_code=postal_code,
            start_at=start_at,
            end_at=end_at,
            status=BookingStatus.DRAFT if draft else BookingStatus.PENDING_PROVIDER,
            latitude=latitude,
            longitude=longitude,
            price_ceiling_cents=price_ceiling_cents,
            short_notice=short_notice or start_at - now <= timedelta(hours=config.short_notice_hours),
            created_at=now,
        )
        try:
            validate_booking_request(booking)
        except ValueError as exc:
            raise BookingValidationError(str(exc)) from exc
        if self._repository.get_booking(booking.booking_id) is not None:
            raise BookingValidationError(f"Booking {booking.booking_id} already exists")

        stored = self._repository.create_booking(booking, now=now)
        logger.info(
            "Booking created | booking_id=%s | status=%s | category=%s | required_providers=%s | short_notice=%s",
            stored.booking_id,
            stored.status,
            stored.service_category,
            stored.required_providers,
            stored.short_notice,
        )
        return stored

    def _transition(
        self,
        booking_id: str,
        to_status: str,
        *,
        reason: str,
        actor_kind: str,
        actor_id: Optional[str],
        release_locks: bool = False,
    ) -> BookingRequest:
        booking = self.get_booking(booking_id)
        if not can_transition(booking.status, to_status):
            raise BookingStateError(f"Booking {booking_id} cannot move from {booking.status} to {to_status}")
        updated, applied = self._repository.update_booking_status(
            booking_id,
            to_status,
            expected_statuses=(booking.status,),
            reason=reason,
            actor_kind=actor_kind,
            actor_id=actor_id,
            now=self._clock(),
            release_confirmed_locks=release_locks,
        )
        if updated is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        if not applied:
            raise BookingStateError(f"Booking {booking_id} changed concurrently; now {updated.status}")
        logger.info(
            "Booking transitioned | booking_id=%s | from=%s | to=%s | actor=%s",
            booking_id,
            booking.status,
            to_status,
            actor_kind,
        )
        return updated

    def confirm_booking(self, booking_id: str, actor_id: Optional[str] = None) -> BookingRequest:
        booking = self.get_booking(booking_id)
        if booking.status != BookingStatus.PENDING_CLIENT:
            raise BookingStateError(f"Booking {booking_id} is {booking.status}, expected pending_client")
        return self._transition(
            booking_id,
            BookingStatus.CONFIRMED,
            reason="client_confirmed",
            actor_kind="client",
            actor_id=actor_id,
        )

    def start_service(self, booking_id: str, actor_id: Optional[str] = None) -> BookingRequest:
        return self._transition(
            booking_id,
            BookingStatus.IN_PROGRESS,
            reason="service_started",
            actor_kind="provider",
            actor_id=actor_id,
        )

    def complete_booking(self, booking_id: str, actor_id: Optional[str] = None) -> BookingRequest:
        booking = self.get_booking(booking_id)
        if booking.status not in BookingStatus.POST_CONFIRMATION:
            raise BookingStateError(f"Booking {booking_id} is {booking.status}, expected confirmed or in_progress")
        return self._transition(
            booking_id,
            BookingStatus.COMPLETED,
            reason="service_completed",
            actor_kind="operator",
            actor_id=actor_id,
            release_locks=True,
        )

    def cancel_booking(
        self,
        booking_id: str,
        *,
        actor_kind: str,
        actor_id: Optional[str] = None,
    ) -> BookingRequest:
        """Cancel a booking, expiring its invitations and releasing every lock."""
        if actor_kind not in CANCELLING_ACTORS:
            raise BookingValidationError(f"actor must be one of {', '.join(CANCELLING_ACTORS)}")
        updated, applied = self._repository.cancel_booking(
            booking_id,
            now=self._clock(),
            actor_kind=actor_kind,
            actor_id=actor_id,
        )
        if updated is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        if not applied:
            raise BookingStateError(f"Booking {booking_id} is already {updated.status}")
        logger.info(
            "Booking cancelled | booking_id=%s | actor=%s | actor_id=%s",
            booking_id,
            actor_kind,
            actor_id,
        )
        return updated

    # ------------------------------------------------------------------
    # Matching rounds
    # ------------------------------------------------------------------

    def preview_ranking(
        self,
        booking_id: str,
        limit: Optional[int] = None,
        distance_max_km: Optional[float] = None,
    ) -> list[ScoredCandidate]:
        booking = self.get_booking(booking_id)
        return self.scoring_service.preview(booking, limit=limit, distance_max_km=distance_max_km)

    def start_matching(self, booking_id: str) -> IssueResult:
        booking = self.get_booking(booking_id)
        if booking.status == BookingStatus.DRAFT:
            booking = self._transition(
                booking_id,
                BookingStatus.PENDING_PROVIDER,
                reason="submitted",
                actor_kind="client",
                actor_id=booking.client_id,
            )
        if booking.status != BookingStatus.PENDING_PROVIDER:
            raise BookingStateError(f"Booking {booking_id} is {booking.status}, expected pending_provider")

        config = self.config_service.current()
        result = self.run_matching_round(booking, config)
        if result.exhausted and self._needs_escalation(booking_id):
            self._on_exhausted(booking_id, config)
        return result

    def run_matching_round(
        self,
        booking: BookingRequest,
        config: MatchingConfig,
        distance_max_km: Optional[float] = None,
    ) -> IssueResult:
        ranked = self.scoring_service.rank(booking, config=config, distance_max_km=distance_max_km)
        return self.invitation_service.issue(
            booking,
            ranked,
            fanout_size=config.fanout_size,
            ttl_minutes=config.invitation_ttl_minutes,
            metadata={
                "round": booking.matching_retry_count + 1,
                "config_version": config.version,
            },
        )

    def _needs_escalation(self, booking_id: str) -> bool:
        booking = self._repository.get_booking(booking_id)
        if booking is None or booking.status != BookingStatus.PENDING_PROVIDER:
            return False
        if self._repository.count_assignments(booking_id) >= booking.required_providers:
            return False
        return not any(
            invitation.is_outstanding
            for invitation in self._repository.list_booking_invitations(booking_id)
        )

    def _on_exhausted(
        self,
        booking_id: str,
        config: Optional[MatchingConfig] = None,
    ) -> tuple[EscalationDecision, Optional[IssueResult]]:
        """Apply the escalation policy and run at most one relaxed round."""
        config = config or self.config_service.current()
        booking = self.get_booking(booking_id)
        decision = self.escalation_service.handle_exhaustion(booking, config)
        reissue: Optional[IssueResult] = None
        if decision.reissue:
            reissue = self.run_matching_round(
                self.get_booking(booking_id),
                config,
                distance_max_km=decision.distance_max_km,
            )
        return decision, reissue

    def mark_viewed(self, invitation_id: int) -> InvitationOutcome:
        return self.invitation_service.mark_viewed(invitation_id)

    def respond(self, invitation_id: int, decision: str) -> RespondResult:
        outcome = self.invitation_service.respond(invitation_id, decision)
        if outcome.ok and outcome.exhausted:
            escalation, reissue = self._on_exhausted(outcome.invitation.booking_id)
            return RespondResult(outcome=outcome, escalation=escalation, reissue=reissue)
        return RespondResult(outcome=outcome)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def force_assign(
        self,
        booking_id: str,
        provider_ids: Sequence[str],
        actor_id: Optional[str] = None,
    ) -> ForceAssignOutcome:
        if not provider_ids:
            raise BookingValidationError("provider_ids must not be empty")
        outcome = self._repository.force_assign(
            booking_id,
            provider_ids,
            now=self._clock(),
            source="operator",
            actor_id=actor_id,
        )
        if outcome is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        logger.info(
            "Operator force assign | booking_id=%s | status=%s | providers=%s | reason=%s",
            booking_id,
            outcome.status,
            ",".join(provider_ids),
            outcome.reason,
        )
        return outcome

    def assign_fallback_team(self, booking_id: str, actor_id: Optional[str] = None) -> ForceAssignOutcome:
        booking = self.get_booking(booking_id)
        candidate = None
        if booking.fallback_team_candidate_id is not None:
            candidate = self._repository.get_fallback_team_candidate(booking.fallback_team_candidate_id)
        if candidate is None:
            raise BookingStateError(f"Booking {booking_id} has no fallback team candidate")
        outcome = self._repository.force_assign(
            booking_id,
            candidate.member_ids,
            now=self._clock(),
            source="fallback_team",
            team_id=candidate.team_id,
            actor_id=actor_id,
        )
        if outcome is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        logger.info(
            "Fallback team assign | booking_id=%s | team_id=%s | status=%s | reason=%s",
            booking_id,
            candidate.team_id,
            outcome.status,
            outcome.reason,
        )
        return outcome

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def run_sweeps(self) -> SweepReport:
        """One pass of every periodic job; safe to call from any process."""
        config = self.config_service.current()
        retries = 0
        escalations = 0

        expired = self.invitation_service.sweep_expired()
        locks = self.lock_service.sweep_expired()
        # invitations past the batch, or that expired between the two reads
        expired.extend(self.invitation_service.expire_for_released_locks(locks))
        exhausted_booking_ids = {
            outcome.invitation.booking_id for outcome in expired if outcome.exhausted
        }
        superseded = self.invitation_service.sweep_superseded()

        for booking_id in sorted(exhausted_booking_ids):
            if not self._needs_escalation(booking_id):
                continue
            decision, _ = self._on_exhausted(booking_id, config)
            retries += 1
            escalations += int(decision.newly_escalated)

        for booking in self.escalation_service.list_stalled(config):
            if booking.booking_id in exhausted_booking_ids:
                continue
            decision, _ = self._on_exhausted(booking.booking_id, config)
            retries += 1
            escalations += int(decision.newly_escalated)

        escalations += self.escalation_service.sweep_deadlines(config)

        report = SweepReport(
            locks_released=len(locks),
            invitations_expired=len(expired),
            superseded_cleaned=superseded,
            retries=retries,
            escalations=escalations,
        )
        logger.info(
            "Sweep completed | locks_released=%s | invitations_expired=%s | superseded=%s | retries=%s | escalations=%s",
            report.locks_released,
            report.invitations_expired,
            report.superseded_cleaned,
            report.retries,
            report.escalations,
        )
        return report
