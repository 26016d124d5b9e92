"""Invitation lifecycle: issue, view, respond, expire and supersede."""

from __future__ import annotations

from typing import Any, Optional

from smartmatch.domain.models import (
    BookingRequest,
    Invitation,
    InvitationOutcome,
    InvitationStatus,
    IssueResult,
    ScoredCandidate,
    SlotLock,
)
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.collaborators import LoggingNotificationDispatch, NotificationDispatch
from smartmatch.services.slot_lock_service import SlotLockService
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger
from smartmatch.utils.timeutils import Clock, utc_now


logger = get_logger(__name__)

DECISION_ACCEPTED = "accepted"
DECISION_DECLINED = "declined"


class InvitationNotFoundError(Exception):
    """Raised when an invitation id is unknown."""


class InvitationValidationError(Exception):
    """Raised when a response decision is not recognised."""


class InvitationService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        lock_service: Optional[SlotLockService] = None,
        dispatch: Optional[NotificationDispatch] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock
        self._lock_service = lock_service or SlotLockService(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
        )
        self._dispatch = dispatch or LoggingNotificationDispatch()

    def issue(
        self,
        booking: BookingRequest,
        ranked: list[ScoredCandidate],
        fanout_size: int,
        ttl_minutes: int,
        metadata: Optional[dict[str, Any]] = None,
    ) -> IssueResult:
        """Lock then invite the best candidates, up to the fanout size.

        Providers never invited to this booking go first; providers whose
        earlier invitation was declined or expired fill what is left.
        Invitations still outstanding count against the fanout.
        """

        remaining = booking.required_providers - self._repository.count_assignments(booking.booking_id)
        outstanding = self._repository.count_outstanding_invitations(booking.booking_id)
        target = max(0, max(fanout_size, remaining) - outstanding)
        previously_invited = {
            invitation.provider_id
            for invitation in self._repository.list_booking_invitations(booking.booking_id)
        }
        ordered = [item for item in ranked if item.provider_id not in previously_invited]
        ordered.extend(item for item in ranked if item.provider_id in previously_invited)

        invitations: list[Invitation] = []
        lock_conflicts: list[str] = []
        skipped: list[str] = []
        for item in ordered:
            if len(invitations) >= target:
                break
            if self._repository.find_outstanding_invitation(booking.booking_id, item.provider_id):
                skipped.append(item.provider_id)
                continue

            lock_outcome = self._lock_service.acquire(
                item.provider_id,
                booking.window,
                booking.booking_id,
                ttl_minutes,
            )
            if not lock_outcome.ok:
                lock_conflicts.append(item.provider_id)
                continue

            invitation_metadata = dict(metadata or {})
            invitation_metadata.update({"rank": item.rank, "score": round(item.score, 6)})
            invitation = self._repository.create_invitation(
                booking_id=booking.booking_id,
                provider_id=item.provider_id,
                lock_id=lock_outcome.lock.lock_id,
                now=self._clock(),
                expires_at=lock_outcome.lock.expires_at,
                metadata=invitation_metadata,
            )
            if invitation is None:
                self._lock_service.release(lock_outcome.lock.lock_id)
                skipped.append(item.provider_id)
                continue
            invitations.append(invitation)

        self._repository.record_matching_round(booking.booking_id, now=self._clock())

        for invitation in invitations:
            try:
                self._dispatch.notify(invitation.provider_id, invitation)
            except Exception as exc:
                logger.warning(
                    "Invitation notification failed | invitation_id=%s | provider_id=%s | error=%s",
                    invitation.invitation_id,
                    invitation.provider_id,
                    exc,
                )

        logger.info(
            "Invitations issued | booking_id=%s | issued=%s | lock_conflicts=%s | skipped=%s | target=%s",
            booking.booking_id,
            len(invitations),
            len(lock_conflicts),
            len(skipped),
            target,
        )
        return IssueResult(
            booking_id=booking.booking_id,
            invitations=invitations,
            lock_conflicts=lock_conflicts,
            skipped_outstanding=skipped,
            outstanding=outstanding,
        )

    def get(self, invitation_id: int) -> Invitation:
        invitation = self._repository.get_invitation(invitation_id)
        if invitation is None:
            raise InvitationNotFoundError(f"Invitation {invitation_id} not found")
        return invitation

    def list_for_booking(self, booking_id: str) -> list[Invitation]:
        return self._repository.list_booking_invitations(booking_id)

    def mark_viewed(self, invitation_id: int) -> InvitationOutcome:
        outcome = self._repository.mark_invitation_viewed(invitation_id, now=self._clock())
        if outcome is None:
            raise InvitationNotFoundError(f"Invitation {invitation_id} not found")
        return outcome

    def respond(self, invitation_id: int, decision: str) -> InvitationOutcome:
        if decision == DECISION_ACCEPTED:
            outcome = self._repository.accept_invitation(invitation_id, now=self._clock())
        elif decision == DECISION_DECLINED:
            outcome = self._repository.close_invitation(
                invitation_id,
                now=self._clock(),
                status=InvitationStatus.DECLINED,
            )
        else:
            raise InvitationValidationError("decision must be 'accepted' or 'declined'")
        if outcome is None:
            raise InvitationNotFoundError(f"Invitation {invitation_id} not found")

        if outcome.ok:
            logger.info(
                "Invitation %s | invitation_id=%s | booking_id=%s | provider_id=%s | superseded=%s",
                decision,
                invitation_id,
                outcome.invitation.booking_id,
                outcome.invitation.provider_id,
                len(outcome.superseded_invitation_ids),
            )
        else:
            logger.info(
                "Invitation response rejected | invitation_id=%s | decision=%s | reason=%s",
                invitation_id,
                decision,
                outcome.reason,
            )
        return outcome

    def expire(self, invitation_id: int, reason: Optional[str] = None) -> InvitationOutcome:
        outcome = self._repository.close_invitation(
            invitation_id,
            now=self._clock(),
            status=InvitationStatus.EXPIRED,
            reason=reason,
        )
        if outcome is None:
            raise InvitationNotFoundError(f"Invitation {invitation_id} not found")
        return outcome

    def sweep_expired(self) -> list[InvitationOutcome]:
        """Expire outstanding invitations past their deadline."""
        outcomes: list[InvitationOutcome] = []
        due = self._repository.list_expired_outstanding_invitations(
            now=self._clock(),
            limit=self._settings.sweep_batch_size,
        )
        for invitation in due:
            outcome = self.expire(invitation.invitation_id, reason="timeout")
            if outcome.ok:
                outcomes.append(outcome)
        if outcomes:
            logger.info("Invitation expiry sweep | expired=%s", len(outcomes))
        return outcomes

    def expire_for_released_locks(self, locks: list[SlotLock]) -> list[InvitationOutcome]:
        """Expire invitations whose lock the lock sweep already released."""
        outcomes: list[InvitationOutcome] = []
        for lock in locks:
            invitation = self._repository.find_outstanding_invitation_for_lock(lock.lock_id)
            if invitation is None:
                continue
            outcome = self.expire(invitation.invitation_id, reason="timeout")
            if outcome.ok:
                outcomes.append(outcome)
        if outcomes:
            logger.info("Invitations expired with their locks | expired=%s", len(outcomes))
        return outcomes

    def cleanup_superseded(self, booking_id: str) -> list[int]:
        superseded = self._repository.supersede_outstanding_invitations(booking_id, now=self._clock())
        if superseded:
            logger.info(
                "Superseded invitations cleaned | booking_id=%s | count=%s",
                booking_id,
                len(superseded),
            )
        return superseded

    def sweep_superseded(self) -> int:
        booking_ids = self._repository.list_staffed_bookings_with_outstanding(
            limit=self._settings.sweep_batch_size
        )
        return sum(len(self.cleanup_superseded(booking_id)) for booking_id in booking_ids)
