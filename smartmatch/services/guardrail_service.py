"""Advisory guardrails and the matching overview, computed from history."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

import pandas as pd

from smartmatch.domain.models import (
    ECO_BIO,
    HISTORY_ASSIGNED,
    HISTORY_RESULTS,
    HISTORY_UNASSIGNED,
    PROVIDER_COMPANY,
    PROVIDER_FREELANCER,
    BookingStatus,
    Guardrail,
    GuardrailCase,
    GuardrailReport,
    HistoryItem,
    HistoryPage,
    InvitationStatus,
    InvitationSummary,
    PolicyMetric,
    PolicyReport,
    ScenarioMetric,
    ScenarioReport,
)
from smartmatch.repository.data_repository import DataRepository
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger
from smartmatch.utils.timeutils import Clock, ensure_utc, from_db_timestamp, utc_now


logger = get_logger(__name__)

_BOOKING_COLUMNS = [
    "booking_id",
    "client_id",
    "status",
    "created_at",
    "start_at",
    "service_category",
    "eco_preference",
    "city",
    "postal_code",
    "short_notice",
    "required_providers",
    "fallback_requested_at",
    "fallback_escalated_at",
    "assigned_count",
    "first_assignment_at",
    "first_invitation_at",
    "first_response_at",
    "invitation_count",
    "first_provider_id",
    "first_provider_kind",
    "first_provider_offers_eco",
]


class GuardrailValidationError(Exception):
    """Raised when a reporting period is invalid."""


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or pd.isna(value):
        return None
    return pd.Timestamp(value).to_pydatetime()


def _parse_timestamps(frame: pd.DataFrame, columns: list[str]) -> pd.DataFrame:
    for column in columns:
        frame[column] = pd.to_datetime(frame[column], utc=True, format="%Y-%m-%dT%H:%M:%S.%fZ")
    return frame


def _cases_from_counts(grouped: pd.DataFrame, count_column: str, ratio_column: Optional[str] = None) -> list[GuardrailCase]:
    ordered = grouped.sort_values(
        by=[count_column, "last_event_at", "entity_id"],
        ascending=[False, False, True],
    )
    cases: list[GuardrailCase] = []
    for row in ordered.itertuples(index=False):
        cases.append(
            GuardrailCase(
                entity_id=str(row.entity_id),
                count=int(getattr(row, count_column)),
                last_event_at=_to_datetime(row.last_event_at),
                ratio=None if ratio_column is None else float(getattr(row, ratio_column)),
            )
        )
    return cases


def _policy_metric(
    policy_id: str,
    policy_type: str,
    scope: str,
    impacted: int,
    breaches: int,
    highlights: list[str],
) -> PolicyMetric:
    return PolicyMetric(
        policy_id=policy_id,
        policy_type=policy_type,
        scope=scope,
        impacted_bookings=impacted,
        compliance_rate=None if impacted == 0 else (impacted - breaches) / impacted,
        breaches=breaches,
        highlights=highlights if impacted else ["no bookings in scope"],
    )


def _history_item(row: dict[str, Any]) -> HistoryItem:
    total = int(row["invitation_count"])
    accepted = int(row["accepted_count"])
    declined = int(row["declined_count"])
    expired = int(row["expired_count"])
    return HistoryItem(
        booking_id=str(row["booking_id"]),
        created_at=from_db_timestamp(row["created_at"]),
        start_at=from_db_timestamp(row["start_at"]),
        service_category=str(row["service_category"]),
        city=row["city"],
        postal_code=row["postal_code"],
        status=str(row["status"]),
        result=HISTORY_UNASSIGNED if row["first_provider_id"] is None else HISTORY_ASSIGNED,
        provider_id=row["first_provider_id"],
        invitations=InvitationSummary(
            total=total,
            accepted=accepted,
            declined=declined,
            expired=expired,
            pending=total - accepted - declined - expired,
        ),
        required_providers=int(row["required_providers"]),
        short_notice=bool(row["short_notice"]),
        last_invitation_at=from_db_timestamp(row["last_invitation_at"]),
    )


class GuardrailService:
    """Flags providers and clients whose recent history looks abusive.

    Output is advisory; nothing here blocks matching.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock

    def resolve_period(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> tuple[datetime, datetime]:
        period_end = ensure_utc(end) if end is not None else self._clock()
        if start is not None:
            period_start = ensure_utc(start)
        else:
            period_start = period_end - timedelta(days=self._settings.guardrail_default_range_days)
        if period_start > period_end:
            raise GuardrailValidationError("period start must not be after period end")
        return period_start, period_end

    def decline_rate_guardrail(self, start: datetime, end: datetime) -> Guardrail:
        min_responses = self._settings.guardrail_decline_min_responses
        ratio_threshold = self._settings.guardrail_decline_ratio
        guardrail = Guardrail(
            guardrail_id="provider_decline_rate",
            target="provider",
            threshold=f">= {min_responses} responses and decline ratio >= {ratio_threshold:.0%}",
            cases=[],
        )
        rows = self._repository.list_invitation_rows_between(start, end)
        frame = pd.DataFrame(rows, columns=["id", "booking_id", "provider_id", "status", "created_at", "responded_at"])
        frame = frame[frame["status"].isin([InvitationStatus.ACCEPTED, InvitationStatus.DECLINED])]
        if frame.empty:
            return guardrail
        frame = _parse_timestamps(frame.copy(), ["created_at", "responded_at"])
        frame["declined"] = (frame["status"] == InvitationStatus.DECLINED).astype(int)
        frame["decline_at"] = frame["responded_at"].where(frame["declined"] == 1)

        grouped = (
            frame.groupby("provider_id")
            .agg(
                responded=("id", "count"),
                declines=("declined", "sum"),
                last_event_at=("decline_at", "max"),
            )
            .reset_index()
            .rename(columns={"provider_id": "entity_id"})
        )
        grouped["ratio"] = grouped["declines"] / grouped["responded"]
        flagged = grouped[
            (grouped["responded"] >= min_responses) & (grouped["ratio"] >= ratio_threshold)
        ]
        return Guardrail(
            guardrail_id=guardrail.guardrail_id,
            target=guardrail.target,
            threshold=guardrail.threshold,
            cases=_cases_from_counts(flagged, "responded", ratio_column="ratio"),
        )

    def _cancellation_guardrail(
        self,
        start: datetime,
        end: datetime,
        *,
        guardrail_id: str,
        target: str,
        reason: str,
        entity_column: str,
        minimum: int,
    ) -> Guardrail:
        guardrail = Guardrail(
            guardrail_id=guardrail_id,
            target=target,
            threshold=f">= {minimum} post-confirmation cancellations",
            cases=[],
        )
        rows = self._repository.list_cancellation_rows_between(start, end)
        frame = pd.DataFrame(
            rows,
            columns=[
                "booking_id",
                "reason",
                "actor_kind",
                "actor_id",
                "client_id",
                "from_status",
                "created_at",
                "provider_id",
            ],
        )
        frame = frame[
            (frame["reason"] == reason)
            & frame["from_status"].isin(BookingStatus.POST_CONFIRMATION)
            & frame[entity_column].notna()
        ]
        if frame.empty:
            return guardrail
        frame = _parse_timestamps(frame.copy(), ["created_at"])
        grouped = (
            frame.groupby(entity_column)
            .agg(cancellations=("booking_id", "count"), last_event_at=("created_at", "max"))
            .reset_index()
            .rename(columns={entity_column: "entity_id"})
        )
        flagged = grouped[grouped["cancellations"] >= minimum]
        return Guardrail(
            guardrail_id=guardrail_id,
            target=target,
            threshold=guardrail.threshold,
            cases=_cases_from_counts(flagged, "cancellations"),
        )

    def provider_cancellation_guardrail(self, start: datetime, end: datetime) -> Guardrail:
        return self._cancellation_guardrail(
            start,
            end,
            guardrail_id="provider_cancellations",
            target="provider",
            reason="provider_cancelled",
            entity_column="provider_id",
            minimum=self._settings.guardrail_provider_cancellation_min,
        )

    def client_cancellation_guardrail(self, start: datetime, end: datetime) -> Guardrail:
        return self._cancellation_guardrail(
            start,
            end,
            guardrail_id="client_cancellations",
            target="client",
            reason="client_cancelled",
            entity_column="client_id",
            minimum=self._settings.guardrail_client_cancellation_min,
        )

    def client_draft_guardrail(self, start: datetime, end: datetime) -> Guardrail:
        minimum = self._settings.guardrail_client_draft_min
        guardrail = Guardrail(
            guardrail_id="client_drafts",
            target="client",
            threshold=f">= {minimum} bookings left in draft",
            cases=[],
        )
        rows = self._repository.list_booking_rows_between(start, end)
        frame = pd.DataFrame(rows, columns=["booking_id", "client_id", "status", "created_at"])
        frame = frame[(frame["status"] == BookingStatus.DRAFT) & frame["client_id"].notna()]
        if frame.empty:
            return guardrail
        frame = _parse_timestamps(frame.copy(), ["created_at"])
        grouped = (
            frame.groupby("client_id")
            .agg(drafts=("booking_id", "count"), last_event_at=("created_at", "max"))
            .reset_index()
            .rename(columns={"client_id": "entity_id"})
        )
        flagged = grouped[grouped["drafts"] >= minimum]
        return Guardrail(
            guardrail_id=guardrail.guardrail_id,
            target=guardrail.target,
            threshold=guardrail.threshold,
            cases=_cases_from_counts(flagged, "drafts"),
        )

    def report(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> GuardrailReport:
        period_start, period_end = self.resolve_period(start, end)
        guardrails = [
            self.decline_rate_guardrail(period_start, period_end),
            self.provider_cancellation_guardrail(period_start, period_end),
            self.client_draft_guardrail(period_start, period_end),
            self.client_cancellation_guardrail(period_start, period_end),
        ]
        logger.info(
            "Guardrail report computed | period_start=%s | period_end=%s | flagged=%s",
            period_start.isoformat(),
            period_end.isoformat(),
            ",".join(f"{item.guardrail_id}:{len(item.cases)}" for item in guardrails),
        )
        return GuardrailReport(period_start=period_start, period_end=period_end, guardrails=guardrails)

    def matching_overview(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Headline matching statistics over bookings created in the period."""
        period_start, period_end = self.resolve_period(start, end)
        bookings = pd.DataFrame(
            self._repository.list_booking_rows_between(period_start, period_end),
            columns=_BOOKING_COLUMNS,
        )
        bookings = bookings[bookings["status"] != BookingStatus.DRAFT]
        invitations = pd.DataFrame(
            self._repository.list_invitation_rows_between(period_start, period_end),
            columns=["id", "booking_id", "provider_id", "status", "created_at", "responded_at"],
        )
        responses_by_status = {
            str(status): int(count)
            for status, count in invitations["status"].value_counts().sort_index().items()
        }

        total = int(len(bookings))
        overview: dict[str, Any] = {
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
            "total_matches": total,
            "successful_matches": 0,
            "pending_matches": 0,
            "success_rate": 0.0,
            "avg_providers_contacted": 0.0,
            "avg_first_response_minutes": None,
            "avg_assignment_minutes": None,
            "fallback_requested": 0,
            "fallback_escalated": 0,
            "responses_by_status": responses_by_status,
        }
        if total == 0:
            return overview

        bookings = _parse_timestamps(
            bookings.copy(),
            ["created_at", "first_assignment_at", "first_invitation_at", "first_response_at"],
        )
        successful = bookings["assigned_count"] > 0
        pending = (~successful) & bookings["status"].isin(
            [BookingStatus.PENDING_PROVIDER, BookingStatus.PENDING_CLIENT]
        )
        response_minutes = (
            (bookings["first_response_at"] - bookings["first_invitation_at"]).dt.total_seconds() / 60.0
        ).dropna()
        assignment_minutes = (
            (bookings["first_assignment_at"] - bookings["first_invitation_at"]).dt.total_seconds() / 60.0
        ).dropna()

        overview.update(
            {
                "successful_matches": int(successful.sum()),
                "pending_matches": int(pending.sum()),
                "success_rate": float(successful.mean()),
                "avg_providers_contacted": float(bookings["invitation_count"].mean()),
                "avg_first_response_minutes": (
                    None if response_minutes.empty else float(response_minutes.mean())
                ),
                "avg_assignment_minutes": (
                    None if assignment_minutes.empty else float(assignment_minutes.mean())
                ),
                "fallback_requested": int(bookings["fallback_requested_at"].notna().sum()),
                "fallback_escalated": int(bookings["fallback_escalated_at"].notna().sum()),
            }
        )
        return overview

    def _booking_frame(self, start: datetime, end: datetime) -> pd.DataFrame:
        frame = pd.DataFrame(
            self._repository.list_booking_rows_between(start, end),
            columns=_BOOKING_COLUMNS,
        )
        frame = frame[frame["status"] != BookingStatus.DRAFT].copy()
        return _parse_timestamps(frame, ["created_at", "start_at"])

    def _berlin_company_policy(self, bookings: pd.DataFrame) -> PolicyMetric:
        prefix = self._settings.policy_berlin_postal_prefix
        city = bookings["city"].fillna("").astype(str).str.lower()
        postal_code = bookings["postal_code"].fillna("").astype(str)
        impacted = bookings[city.str.contains("berlin", regex=False) | postal_code.str.startswith(prefix)]
        compliant = int((impacted["first_provider_kind"] == PROVIDER_COMPANY).sum())
        return _policy_metric(
            "berlin_companies",
            "priority",
            f"Berlin city or postal code {prefix}xxx",
            impacted=len(impacted),
            breaches=len(impacted) - compliant,
            highlights=[f"{compliant} of {len(impacted)} bookings staffed by companies"],
        )

    def _eco_alignment_policy(self, bookings: pd.DataFrame) -> PolicyMetric:
        impacted = bookings[bookings["eco_preference"] == ECO_BIO]
        compliant = int(impacted["first_provider_offers_eco"].fillna(0).astype(bool).sum())
        return _policy_metric(
            "eco_alignment",
            "priority",
            f"eco_preference = {ECO_BIO}",
            impacted=len(impacted),
            breaches=len(impacted) - compliant,
            highlights=[f"{compliant} of {len(impacted)} eco bookings staffed by eco providers"],
        )

    def _weekend_cap_policy(self, bookings: pd.DataFrame) -> PolicyMetric:
        cap = self._settings.policy_weekend_freelancer_daily_cap
        # Saturday and Sunday, by the booking's UTC start date
        weekend = bookings[
            (bookings["first_provider_kind"] == PROVIDER_FREELANCER)
            & (bookings["start_at"].dt.dayofweek >= 5)
        ]
        per_day = weekend.assign(day=weekend["start_at"].dt.date).groupby(["first_provider_id", "day"]).size()
        breaches = int((per_day - cap).clip(lower=0).sum())
        return _policy_metric(
            "freelancer_weekend_cap",
            "limit",
            f"freelancers, at most {cap} weekend bookings per day",
            impacted=len(weekend),
            breaches=breaches,
            highlights=[
                f"{breaches} bookings over the daily cap",
                f"{weekend['first_provider_id'].nunique()} freelancers concerned",
            ],
        )

    def policy_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> PolicyReport:
        """Compliance of first assignments with the staffing policies."""
        period_start, period_end = self.resolve_period(start, end)
        bookings = self._booking_frame(period_start, period_end)
        policies = [
            self._berlin_company_policy(bookings),
            self._eco_alignment_policy(bookings),
            self._weekend_cap_policy(bookings),
        ]
        logger.info(
            "Policy metrics computed | period_start=%s | period_end=%s | breaches=%s",
            period_start.isoformat(),
            period_end.isoformat(),
            ",".join(f"{item.policy_id}:{item.breaches}" for item in policies),
        )
        return PolicyReport(period_start=period_start, period_end=period_end, policies=policies)

    def scenario_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ScenarioReport:
        """Matching outcomes split by lead time and service type."""
        period_start, period_end = self.resolve_period(start, end)
        bookings = self._booking_frame(period_start, period_end)
        standard_hours = self._settings.scenario_standard_lead_hours
        urgent_hours = self._settings.scenario_urgent_lead_hours
        special = self._settings.scenario_special_categories

        lead_hours = (bookings["start_at"] - bookings["created_at"]).dt.total_seconds() / 3600.0
        short_notice = bookings["short_notice"].astype(bool)
        definitions = [
            (
                "standard",
                f"lead time >= {standard_hours:g} h and not short notice",
                ~short_notice & (lead_hours >= standard_hours),
            ),
            (
                "urgent",
                f"lead time < {urgent_hours:g} h or short notice",
                short_notice | (lead_hours < urgent_hours),
            ),
            (
                "special",
                f"service category in {', '.join(special)}",
                bookings["service_category"].isin(special),
            ),
        ]

        scenarios: list[ScenarioMetric] = []
        for scenario_id, conditions, mask in definitions:
            subset = bookings[mask]
            total = int(len(subset))
            scenarios.append(
                ScenarioMetric(
                    scenario_id=scenario_id,
                    conditions=conditions,
                    bookings=total,
                    success_rate=(
                        float(subset["status"].isin(BookingStatus.SUCCESSFUL).mean()) if total else 0.0
                    ),
                    avg_invitations=float(subset["invitation_count"].mean()) if total else None,
                    avg_lead_hours=float(lead_hours[mask].mean()) if total else None,
                )
            )
        logger.info(
            "Scenario metrics computed | period_start=%s | period_end=%s | bookings=%s",
            period_start.isoformat(),
            period_end.isoformat(),
            ",".join(f"{item.scenario_id}:{item.bookings}" for item in scenarios),
        )
        return ScenarioReport(period_start=period_start, period_end=period_end, scenarios=scenarios)

    def history(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        service_category: Optional[str] = None,
        postal_code: Optional[str] = None,
        result: Optional[str] = None,
        invitation_status: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> HistoryPage:
        """Newest-first matching history; page sizes are clamped to the configured maximum."""
        if result is not None and result not in HISTORY_RESULTS:
            raise GuardrailValidationError(f"result must be one of {', '.join(HISTORY_RESULTS)}")
        if invitation_status is not None and invitation_status not in InvitationStatus.ALL:
            raise GuardrailValidationError(
                f"invitation_status must be one of {', '.join(InvitationStatus.ALL)}"
            )
        period_start, period_end = self.resolve_period(start, end)
        page = max(page, 1)
        size = page_size if page_size is not None else self._settings.history_page_size
        size = min(max(size, 1), self._settings.history_max_page_size)

        total, rows = self._repository.list_booking_history(
            period_start,
            period_end,
            service_category=service_category,
            postal_code_prefix=postal_code,
            result=result,
            invitation_status=invitation_status,
            limit=size,
            offset=(page - 1) * size,
        )
        return HistoryPage(items=[_history_item(row) for row in rows], page=page, page_size=size, total=total)
