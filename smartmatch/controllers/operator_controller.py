"""Controller layer for operator console endpoints."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator

from smartmatch.controllers.dependencies import (
    get_auth_service,
    get_guardrail_service,
    get_matching_service,
    require_operator,
)
from smartmatch.controllers.matching_controller import (
    AssignmentResponse,
    BookingResponse,
    SlotLockResponse,
    assignment_response,
    booking_response,
    lock_response,
)
from smartmatch.domain.models import SCORING_FACTORS, ForceAssignOutcome, MatchingConfig
from smartmatch.services.auth_service import (
    AuthService,
    InvalidOperatorTokenError,
    OperatorTokenNotConfiguredError,
)
from smartmatch.services.config_service import ConfigValidationError
from smartmatch.services.guardrail_service import GuardrailService, GuardrailValidationError
from smartmatch.services.matching_service import (
    BookingNotFoundError,
    BookingStateError,
    BookingValidationError,
    SmartMatchService,
)
from smartmatch.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/operator", tags=["operator"])


class LoginRequest(BaseModel):
    operator_token: str = Field(min_length=1)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MatchingConfigResponse(BaseModel):
    version: int = Field(ge=0)
    distance_max_km: float = Field(gt=0.0)
    weights: dict[str, float]
    team_bonus_two: float = Field(ge=0.0)
    team_bonus_three_plus: float = Field(ge=0.0)
    fanout_size: int = Field(gt=0)
    invitation_ttl_minutes: int = Field(gt=0)
    max_retry_attempts: int = Field(ge=0)
    fallback_threshold: int = Field(gt=0)
    distance_relaxation_factor: float = Field(ge=1.0)
    short_notice_hours: int = Field(ge=0)
    escalation_deadline_hours: int = Field(ge=0)
    rating_credibility_reviews: int = Field(gt=0)
    created_at: Optional[datetime] = None


class MatchingConfigUpdateRequest(BaseModel):
    distance_max_km: Optional[float] = Field(default=None, gt=0.0)
    weights: Optional[dict[str, float]] = None
    team_bonus_two: Optional[float] = Field(default=None, ge=0.0)
    team_bonus_three_plus: Optional[float] = Field(default=None, ge=0.0)
    fanout_size: Optional[int] = Field(default=None, gt=0, le=50)
    invitation_ttl_minutes: Optional[int] = Field(default=None, gt=0)
    max_retry_attempts: Optional[int] = Field(default=None, ge=0)
    fallback_threshold: Optional[int] = Field(default=None, gt=0)
    distance_relaxation_factor: Optional[float] = Field(default=None, ge=1.0)
    short_notice_hours: Optional[int] = Field(default=None, ge=0)
    escalation_deadline_hours: Optional[int] = Field(default=None, ge=0)
    rating_credibility_reviews: Optional[int] = Field(default=None, gt=0)

    @field_validator("weights")
    @classmethod
    def validate_weights(cls, value: Optional[dict[str, float]]) -> Optional[dict[str, float]]:
        if value is None:
            return None
        for factor, weight in value.items():
            if factor not in SCORING_FACTORS:
                raise ValueError(f"unknown scoring factor: {factor}")
            if weight < 0.0:
                raise ValueError("weights must be >= 0")
        return value


class FallbackTeamResponse(BaseModel):
    candidate_id: int
    team_id: str
    name: str
    preferred_size: int
    member_ids: list[str]
    total_score: float


class FallbackQueueItem(BaseModel):
    booking: BookingResponse
    assigned_count: int = Field(ge=0)
    fallback_team: Optional[FallbackTeamResponse] = None


class FallbackQueueResponse(BaseModel):
    items: list[FallbackQueueItem]


class GuardrailCaseResponse(BaseModel):
    entity_id: str
    count: int = Field(ge=0)
    last_event_at: Optional[datetime] = None
    ratio: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class GuardrailResponse(BaseModel):
    guardrail_id: str
    target: str
    threshold: str
    cases: list[GuardrailCaseResponse]


class GuardrailReportResponse(BaseModel):
    period_start: datetime
    period_end: datetime
    guardrails: list[GuardrailResponse]


class PolicyMetricResponse(BaseModel):
    policy_id: str
    policy_type: str
    scope: str
    impacted_bookings: int = Field(ge=0)
    compliance_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    breaches: int = Field(ge=0)
    highlights: list[str]


class PolicyReportResponse(BaseModel):
    period_start: datetime
    period_end: datetime
    policies: list[PolicyMetricResponse]


class ScenarioMetricResponse(BaseModel):
    scenario_id: str
    conditions: str
    bookings: int = Field(ge=0)
    success_rate: float = Field(ge=0.0, le=1.0)
    avg_invitations: Optional[float] = None
    avg_lead_hours: Optional[float] = None


class ScenarioReportResponse(BaseModel):
    period_start: datetime
    period_end: datetime
    scenarios: list[ScenarioMetricResponse]


class InvitationSummaryResponse(BaseModel):
    total: int = Field(ge=0)
    accepted: int = Field(ge=0)
    declined: int = Field(ge=0)
    expired: int = Field(ge=0)
    pending: int = Field(ge=0)


class HistoryItemResponse(BaseModel):
    booking_id: str
    created_at: datetime
    start_at: datetime
    service_category: str
    city: Optional[str] = None
    postal_code: Optional[str] = None
    status: str
    result: str
    provider_id: Optional[str] = None
    invitations: InvitationSummaryResponse
    required_providers: int = Field(gt=0)
    short_notice: bool
    last_invitation_at: Optional[datetime] = None


class HistoryPageResponse(BaseModel):
    items: list[HistoryItemResponse]
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)
    total: int = Field(ge=0)


class ForceAssignRequest(BaseModel):
    provider_ids: list[str] = Field(min_length=1)
    actor_id: Optional[str] = None

    @field_validator("provider_ids")
    @classmethod
    def validate_provider_ids(cls, value: list[str]) -> list[str]:
        if any(not item.strip() for item in value):
            raise ValueError("provider_ids must be non-empty strings")
        return value


class FallbackAssignRequest(BaseModel):
    actor_id: Optional[str] = None


class ForceAssignResponse(BaseModel):
    booking_id: str
    status: str
    assignments: list[AssignmentResponse]


class SweepResponse(BaseModel):
    locks_released: int = Field(ge=0)
    invitations_expired: int = Field(ge=0)
    superseded_cleaned: int = Field(ge=0)
    retries: int = Field(ge=0)
    escalations: int = Field(ge=0)


def config_response(config: MatchingConfig) -> MatchingConfigResponse:
    payload = asdict(config)
    payload["weights"] = dict(config.weights)
    return MatchingConfigResponse(**payload)


def _force_assign_response(outcome: ForceAssignOutcome) -> ForceAssignResponse:
    if not outcome.ok:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "reason": outcome.reason,
                "conflicting_provider_ids": list(outcome.conflicting_provider_ids),
            },
        )
    return ForceAssignResponse(
        booking_id=outcome.booking_id,
        status=outcome.status,
        assignments=[assignment_response(item) for item in outcome.assignments],
    )


@router.post("/login", response_model=LoginResponse, status_code=status.HTTP_200_OK)
async def login(
    payload: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    try:
        bearer = auth_service.login(payload.operator_token)
        return LoginResponse(access_token=bearer)
    except (OperatorTokenNotConfiguredError, InvalidOperatorTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


@router.get(
    "/config",
    response_model=MatchingConfigResponse,
    dependencies=[Depends(require_operator)],
)
async def get_config(
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> MatchingConfigResponse:
    return config_response(matching_service.config_service.current())


@router.put(
    "/config",
    response_model=MatchingConfigResponse,
    dependencies=[Depends(require_operator)],
)
async def update_config(
    payload: MatchingConfigUpdateRequest,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> MatchingConfigResponse:
    try:
        updated = matching_service.config_service.update(payload.model_dump(exclude_none=True))
        return config_response(updated)
    except ConfigValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected config update failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update matching config",
        ) from exc


@router.get(
    "/fallback_queue",
    response_model=FallbackQueueResponse,
    dependencies=[Depends(require_operator)],
)
async def fallback_queue(
    limit: int = Query(default=100, ge=1, le=500),
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> FallbackQueueResponse:
    entries = matching_service.escalation_service.fallback_queue(limit=limit)
    items: list[FallbackQueueItem] = []
    for entry in entries:
        team = None
        if entry.fallback_team is not None:
            team = FallbackTeamResponse(
                candidate_id=entry.fallback_team.candidate_id,
                team_id=entry.fallback_team.team_id,
                name=entry.fallback_team.name,
                preferred_size=entry.fallback_team.preferred_size,
                member_ids=list(entry.fallback_team.member_ids),
                total_score=entry.fallback_team.total_score,
            )
        items.append(
            FallbackQueueItem(
                booking=booking_response(entry.booking),
                assigned_count=entry.assigned_count,
                fallback_team=team,
            )
        )
    return FallbackQueueResponse(items=items)


@router.get(
    "/guardrails",
    response_model=GuardrailReportResponse,
    dependencies=[Depends(require_operator)],
)
async def guardrails(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    guardrail_service: GuardrailService = Depends(get_guardrail_service),
) -> GuardrailReportResponse:
    try:
        report = guardrail_service.report(start=start, end=end)
    except GuardrailValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return GuardrailReportResponse(
        period_start=report.period_start,
        period_end=report.period_end,
        guardrails=[
            GuardrailResponse(
                guardrail_id=item.guardrail_id,
                target=item.target,
                threshold=item.threshold,
                cases=[GuardrailCaseResponse(**asdict(case)) for case in item.cases],
            )
            for item in report.guardrails
        ],
    )


@router.get("/overview", dependencies=[Depends(require_operator)])
async def overview(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    guardrail_service: GuardrailService = Depends(get_guardrail_service),
) -> dict[str, Any]:
    try:
        return guardrail_service.matching_overview(start=start, end=end)
    except GuardrailValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get(
    "/policy_metrics",
    response_model=PolicyReportResponse,
    dependencies=[Depends(require_operator)],
)
async def policy_metrics(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    guardrail_service: GuardrailService = Depends(get_guardrail_service),
) -> PolicyReportResponse:
    try:
        report = guardrail_service.policy_metrics(start=start, end=end)
    except GuardrailValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return PolicyReportResponse(**asdict(report))


@router.get(
    "/scenario_metrics",
    response_model=ScenarioReportResponse,
    dependencies=[Depends(require_operator)],
)
async def scenario_metrics(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    guardrail_service: GuardrailService = Depends(get_guardrail_service),
) -> ScenarioReportResponse:
    try:
        report = guardrail_service.scenario_metrics(start=start, end=end)
    except GuardrailValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ScenarioReportResponse(**asdict(report))


@router.get(
    "/history",
    response_model=HistoryPageResponse,
    dependencies=[Depends(require_operator)],
)
async def history(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    service_category: Optional[str] = Query(default=None),
    postal_code: Optional[str] = Query(default=None),
    result: Optional[str] = Query(default=None, pattern=r"^(assigned|unassigned)$"),
    invitation_status: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: Optional[int] = Query(default=None, ge=1, le=100),
    guardrail_service: GuardrailService = Depends(get_guardrail_service),
) -> HistoryPageResponse:
    try:
        listing = guardrail_service.history(
            start=start,
            end=end,
            service_category=service_category,
            postal_code=postal_code,
            result=result,
            invitation_status=invitation_status,
            page=page,
            page_size=page_size,
        )
    except GuardrailValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return HistoryPageResponse(**asdict(listing))


@router.get(
    "/bookings/{booking_id}/locks",
    response_model=list[SlotLockResponse],
    dependencies=[Depends(require_operator)],
)
async def booking_locks(
    booking_id: str,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> list[SlotLockResponse]:
    try:
        matching_service.get_booking(booking_id)
    except BookingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return [lock_response(item) for item in matching_service.lock_service.list_for_booking(booking_id)]


@router.post(
    "/bookings/{booking_id}/force_assign",
    response_model=ForceAssignResponse,
    dependencies=[Depends(require_operator)],
)
async def force_assign(
    booking_id: str,
    payload: ForceAssignRequest,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> ForceAssignResponse:
    try:
        outcome = matching_service.force_assign(
            booking_id,
            payload.provider_ids,
            actor_id=payload.actor_id,
        )
    except BookingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BookingValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _force_assign_response(outcome)


@router.post(
    "/bookings/{booking_id}/assign_fallback_team",
    response_model=ForceAssignResponse,
    dependencies=[Depends(require_operator)],
)
async def assign_fallback_team(
    booking_id: str,
    payload: FallbackAssignRequest,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> ForceAssignResponse:
    try:
        outcome = matching_service.assign_fallback_team(booking_id, actor_id=payload.actor_id)
    except BookingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BookingStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _force_assign_response(outcome)


@router.post(
    "/sweeps/run",
    response_model=SweepResponse,
    dependencies=[Depends(require_operator)],
)
async def run_sweeps(
    request: Request,
    matching_service: SmartMatchService = Depends(get_matching_service),
) -> SweepResponse:
    scheduler = getattr(request.app.state, "sweep_scheduler", None)
    try:
        report = scheduler.run_once() if scheduler is not None else matching_service.run_sweeps()
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected sweep failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run sweeps",
        ) from exc
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Sweep pass failed; see server logs",
        )
    return SweepResponse(**asdict(report))
