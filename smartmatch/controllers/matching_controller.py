"""HTTP controller layer for bookings and provider invitations."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, ValidationInfo, field_validator

from smartmatch.controllers.dependencies import get_matching_service
from smartmatch.domain.models import (
    Assignment,
    BookingRequest,
    Invitation,
    InvitationOutcome,
    IssueResult,
    ScoredCandidate,
    SlotLock,
)
from smartmatch.services.invitation_service import (
    InvitationNotFoundError,
    InvitationValidationError,
)
from smartmatch.services.matching_service import (
    BookingNotFoundError,
    BookingStateError,
    BookingValidationError,
    SmartMatchService,
)
from smartmatch.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["matching"])


class BookingCreateRequest(BaseModel):
    """Input DTO validated before entering service layer."""

    booking_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    client_id: Optional[str] = Field(default=None, min_length=1)
    service_category: str = Field(min_length=1)
    eco_preference: str = Field(default="standard", pattern=r"^(standard|bio)$")
    required_providers: int = Field(default=1, ge=1, le=20)
    city: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    start_at: datetime
    end_at: datetime
    price_ceiling_cents: Optional[int] = Field(default=None, gt=0)
    short_notice: bool = False
    draft: bool = False

    @field_validator("end_at")
    @classmethod
    def validate_window(cls, value: datetime, info: ValidationInfo) -> datetime:
        start_at = info.data.get("start_at")
        if start_at is not None and value <= start_at:
            raise ValueError("end_at must be after start_at")
        return value


class BookingResponse(BaseModel):
    booking_id: str
    client_id: Optional[str]
    service_category: str
    eco_preference: str
    required_providers: int
    city: Optional[str]
    postal_code: Optional[str]
    start_at: datetime
    end_at: datetime
    status: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    price_ceiling_cents: Optional[int] = None
    matching_retry_count: int = Field(ge=0)
    short_notice: bool
    fallback_requested_at: Optional[datetime] = None
    fallback_escalated_at: Optional[datetime] = None
    fallback_team_candidate_id: Optional[int] = None
    last_matching_round_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InvitationResponse(BaseModel):
    invitation_id: int
    booking_id: str
    provider_id: str
    lock_id: Optional[int]
    status: str
    created_at: datetime
    expires_at: datetime
    viewed_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AssignmentResponse(BaseModel):
    assignment_id: int
    booking_id: str
    provider_id: str
    source: str
    created_at: datetime
    team_id: Optional[str] = None


class SlotLockResponse(BaseModel):
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


class BookingDetailResponse(BaseModel):
    booking: BookingResponse
    invitations: list[InvitationResponse]
    assignments: list[AssignmentResponse]
    locks: list[SlotLockResponse]


class ScoredCandidateResponse(BaseModel):
    provider_id: str
    rank: int = Field(ge=1)
    score: float = Field(ge=0.0)
    breakdown: dict[str, float]
    distance_km: Optional[float] = None
    price_estimate_cents: Optional[int] = None


class PreviewResponse(BaseModel):
    booking_id: str
    candidates: list[ScoredCandidateResponse]


class IssueResponse(BaseModel):
    booking_id: str
    invitations: list[InvitationResponse]
    lock_conflicts: list[str]
    skipped_outstanding: list[str]
    outstanding: int = 0
    exhausted: bool


class CancelRequest(BaseModel):
    actor: str = Field(pattern=r"^(client|provider|operator)$")
    actor_id: Optional[str] = None


class ActorRequest(BaseModel):
    actor_id: Optional[str] = None


class RespondRequest(BaseModel):
    decision: str = Field(pattern=r"^(accepted|declined)$")


class RespondResponse(BaseModel):
    invitation: InvitationResponse
    assignment: Optional[AssignmentResponse] = None
    superseded_invitation_ids: list[int]
    exhausted: bool
    retry_count: Optional[int] = None
    reissued_invitations: int = 0
    fallback_requested: bool = False
    fallback_escalated: bool = False


def booking_response(booking: BookingRequest) -> BookingResponse:
    return BookingResponse(**asdict(booking))


def invitation_response(invitation: Invitation) -> InvitationResponse:
    payload = asdict(invitation)
    payload["metadata"] = dict(invitation.metadata)
    return InvitationResponse(**payload)


def assignment_response(assignment: Assignment) -> AssignmentResponse:
    return AssignmentResponse(**asdict(assignment))


def lock_response(lock: SlotLock) -> SlotLockResponse:
    return SlotLockResponse(**asdict(lock))


def scored_response(item: ScoredCandidate) -> ScoredCandidateResponse:
    return ScoredCandidateResponse(
        provider_id=item.provider_id,
        rank=item.rank,
        score=item.score,
        breakdown=item.breakdown.to_dict(),
        distance_km=item.distance_km,
        price_estimate_cents=item.price_estimate_cents,
    )


def issue_response(result: IssueResult) -> IssueResponse:
    return IssueResponse(
        booking_id=result.booking_id,
        invitations=[invitation_response(item) for item in result.invitations],
        lock_conflicts=result.lock_conflicts,
        skipped_outstanding=result.skipped_outstanding,
        outstanding=result.outstanding,
        exhausted=result.exhausted,
    )


def _raise_conflict(outcome: InvitationOutcome) -> None:
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "reason": outcome.reason,
            "invitation_status": outcome.invitation.status if outcome.invitation else None,
        },
    )


def _booking_errors(exc: Exception) -> HTTPException:
    if isinstance(exc, BookingNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, BookingStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreateRequest,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> BookingResponse:
    try:
        booking = matching_service.create_booking(**payload.model_dump())
        return booking_response(booking)
    except BookingValidationError as exc:
        raise _booking_errors(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected booking creation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create booking",
        ) from exc


@router.get("/bookings/{booking_id}", response_model=BookingDetailResponse)
async def get_booking(
    booking_id: str,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> BookingDetailResponse:
    try:
        detail = matching_service.booking_detail(booking_id)
    except BookingNotFoundError as exc:
        raise _booking_errors(exc) from exc
    return BookingDetailResponse(
        booking=booking_response(detail.booking),
        invitations=[invitation_response(item) for item in detail.invitations],
        assignments=[assignment_response(item) for item in detail.assignments],
        locks=[lock_response(item) for item in detail.locks],
    )


@router.post("/bookings/{booking_id}/start_matching", response_model=IssueResponse)
async def start_matching(
    booking_id: str,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> IssueResponse:
    try:
        return issue_response(matching_service.start_matching(booking_id))
    except (BookingNotFoundError, BookingStateError) as exc:
        raise _booking_errors(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected matching round failure | booking_id=%s", booking_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run matching round",
        ) from exc


@router.get("/bookings/{booking_id}/preview", response_model=PreviewResponse)
async def preview_ranking(
    booking_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    distance_max_km: Optional[float] = Query(default=None, gt=0.0),
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> PreviewResponse:
    try:
        ranked = matching_service.preview_ranking(
            booking_id,
            limit=limit,
            distance_max_km=distance_max_km,
        )
    except BookingNotFoundError as exc:
        raise _booking_errors(exc) from exc
    return PreviewResponse(
        booking_id=booking_id,
        candidates=[scored_response(item) for item in ranked],
    )


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    payload: CancelRequest,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> BookingResponse:
    try:
        booking = matching_service.cancel_booking(
            booking_id,
            actor_kind=payload.actor,
            actor_id=payload.actor_id,
        )
        return booking_response(booking)
    except (BookingNotFoundError, BookingStateError, BookingValidationError) as exc:
        raise _booking_errors(exc) from exc


@router.post("/bookings/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: str,
    payload: ActorRequest,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> BookingResponse:
    try:
        return booking_response(matching_service.confirm_booking(booking_id, actor_id=payload.actor_id))
    except (BookingNotFoundError, BookingStateError) as exc:
        raise _booking_errors(exc) from exc


@router.post("/bookings/{booking_id}/start", response_model=BookingResponse)
async def start_service(
    booking_id: str,
    payload: ActorRequest,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> BookingResponse:
    try:
        return booking_response(matching_service.start_service(booking_id, actor_id=payload.actor_id))
    except (BookingNotFoundError, BookingStateError) as exc:
        raise _booking_errors(exc) from exc


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str,
    payload: ActorRequest,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> BookingResponse:
    try:
        return booking_response(matching_service.complete_booking(booking_id, actor_id=payload.actor_id))
    except (BookingNotFoundError, BookingStateError) as exc:
        raise _booking_errors(exc) from exc


@router.post("/invitations/{invitation_id}/view", response_model=InvitationResponse)
async def view_invitation(
    invitation_id: int,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> InvitationResponse:
    try:
        outcome = matching_service.mark_viewed(invitation_id)
    except InvitationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if not outcome.ok:
        _raise_conflict(outcome)
    return invitation_response(outcome.invitation)


@router.post("/invitations/{invitation_id}/respond", response_model=RespondResponse)
async def respond_invitation(
    invitation_id: int,
    payload: RespondRequest,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> RespondResponse:
    try:
        result = matching_service.respond(invitation_id, payload.decision)
    except InvitationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvitationValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected invitation response failure | invitation_id=%s", invitation_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record invitation response",
        ) from exc

    outcome = result.outcome
    if not outcome.ok:
        _raise_conflict(outcome)
    escalation = result.escalation
    return RespondResponse(
        invitation=invitation_response(outcome.invitation),
        assignment=assignment_response(outcome.assignment) if outcome.assignment else None,
        superseded_invitation_ids=list(outcome.superseded_invitation_ids),
        exhausted=outcome.exhausted,
        retry_count=escalation.retry_count if escalation else None,
        reissued_invitations=len(result.reissue.invitations) if result.reissue else 0,
        fallback_requested=escalation.fallback_requested if escalation else False,
        fallback_escalated=escalation.fallback_escalated if escalation else False,
    )
