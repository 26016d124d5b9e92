"""Streamlit operator console for the Smart Match Assignment Engine."""

from __future__ import annotations

import datetime
import os
from typing import Any, Dict, List, Optional

import pandas as pd
import requests
import streamlit as st

# ==========================================
# Configuration & Constants
# ==========================================
API_BASE_URL = os.getenv("SMARTMATCH_API_URL", "http://127.0.0.1:8000")

st.set_page_config(
    page_title="Smart Match Console",
    page_icon="🧹",
    layout="wide",
)


# ==========================================
# API Helper Functions
# ==========================================
def _headers() -> Dict[str, str]:
    token = st.session_state.get("access_token")
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


def api_get(path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
    try:
        response = requests.get(
            f"{API_BASE_URL}{path}",
            params=params,
            headers=_headers(),
            timeout=10,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Request to {path} failed: {e}")
        return None


def api_send(method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Any]:
    try:
        response = requests.request(
            method,
            f"{API_BASE_URL}{path}",
            json=payload or {},
            headers=_headers(),
            timeout=15,
        )
        if response.status_code == 409:
            st.warning(f"Conflict: {response.json().get('detail')}")
            return None
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Request to {path} failed: {e}")
        return None


def _period_params(days: int) -> Dict[str, str]:
    end = datetime.datetime.now(datetime.timezone.utc)
    start = end - datetime.timedelta(days=days)
    return {"start": start.isoformat(), "end": end.isoformat()}


# ==========================================
# UI Page Functions
# ==========================================
def render_login() -> None:
    with st.sidebar.expander("Operator login", expanded="access_token" not in st.session_state):
        token = st.text_input("Operator token", type="password")
        if st.button("Login"):
            result = api_send("POST", "/operator/login", {"operator_token": token})
            if result:
                st.session_state["access_token"] = result["access_token"]
                st.success("Logged in")


def render_queue_page() -> None:
    st.header("🚨 Fallback Queue")
    st.markdown("Understaffed bookings awaiting an operator, escalated first.")

    result = api_get("/operator/fallback_queue")
    if not result:
        return
    items: List[Dict[str, Any]] = result.get("items", [])
    if not items:
        st.info("Nothing waiting for operators.")
        return

    rows = []
    for item in items:
        booking = item["booking"]
        team = item.get("fallback_team") or {}
        rows.append(
            {
                "booking_id": booking["booking_id"],
                "start_at": booking["start_at"],
                "required": booking["required_providers"],
                "assigned": item["assigned_count"],
                "retries": booking["matching_retry_count"],
                "escalated_at": booking.get("fallback_escalated_at"),
                "requested_at": booking.get("fallback_requested_at"),
                "fallback_team": team.get("name"),
                "team_members": ", ".join(team.get("member_ids", [])),
            }
        )
    st.dataframe(pd.DataFrame(rows), use_container_width=True)

    st.write("### Resolve")
    booking_id = st.selectbox("Booking", [row["booking_id"] for row in rows])
    col1, col2 = st.columns(2)
    with col1:
        if st.button("Assign fallback team", type="primary"):
            outcome = api_send("POST", f"/operator/bookings/{booking_id}/assign_fallback_team", {})
            if outcome:
                st.success(f"Assigned {len(outcome['assignments'])} provider(s)")
    with col2:
        provider_ids = st.text_input("Provider ids (comma separated)")
        if st.button("Force assign"):
            ids = [item.strip() for item in provider_ids.split(",") if item.strip()]
            outcome = api_send(
                "POST",
                f"/operator/bookings/{booking_id}/force_assign",
                {"provider_ids": ids},
            )
            if outcome:
                st.success(f"Assigned {len(outcome['assignments'])} provider(s)")


def render_booking_page() -> None:
    st.header("🔎 Booking Inspector")
    booking_id = st.text_input("Booking id")
    if not booking_id:
        return

    detail = api_get(f"/bookings/{booking_id}")
    if not detail:
        return
    booking = detail["booking"]
    col_a, col_b, col_c = st.columns(3)
    col_a.metric("Status", booking["status"])
    col_b.metric("Retries", booking["matching_retry_count"])
    col_c.metric("Assigned", f"{len(detail['assignments'])}/{booking['required_providers']}")

    st.write("### Invitations")
    st.dataframe(pd.DataFrame(detail["invitations"]), use_container_width=True)
    st.write("### Slot locks")
    st.dataframe(pd.DataFrame(detail["locks"]), use_container_width=True)

    st.write("### Ranking preview")
    distance = st.slider("Distance ceiling (km)", 1.0, 100.0, 20.0)
    if st.button("Preview ranking"):
        preview = api_get(f"/bookings/{booking_id}/preview", {"distance_max_km": distance})
        if preview:
            rows = [
                {"rank": item["rank"], "provider_id": item["provider_id"], "score": round(item["score"], 4), **item["breakdown"]}
                for item in preview["candidates"]
            ]
            if rows:
                st.dataframe(pd.DataFrame(rows), use_container_width=True)
            else:
                st.info("No eligible candidates within the ceiling.")


def render_guardrail_page() -> None:
    st.header("🛡️ Guardrails")
    days = st.slider("Period (days)", 1, 90, 30)
    report = api_get("/operator/guardrails", _period_params(days))
    if not report:
        return
    for guardrail in report.get("guardrails", []):
        st.subheader(f"{guardrail['guardrail_id']} ({guardrail['target']})")
        st.caption(guardrail["threshold"])
        if guardrail["cases"]:
            st.dataframe(pd.DataFrame(guardrail["cases"]), use_container_width=True)
        else:
            st.success("No offenders in this period.")


def render_overview_page() -> None:
    st.header("📈 Matching Overview")
    days = st.slider("Period (days)", 1, 90, 30, key="overview_days")
    overview = api_get("/operator/overview", _period_params(days))
    if not overview:
        return
    col_a, col_b, col_c, col_d = st.columns(4)
    col_a.metric("Bookings", overview["total_matches"])
    col_b.metric("Successful", overview["successful_matches"])
    col_c.metric("Success rate", f"{overview['success_rate'] * 100:.1f}%")
    col_d.metric("Avg providers contacted", f"{overview['avg_providers_contacted']:.1f}")
    responses = overview.get("responses_by_status", {})
    if responses:
        st.bar_chart(pd.Series(responses, name="invitations"))

    if st.button("Run sweeps now"):
        report = api_send("POST", "/operator/sweeps/run", {})
        if report:
            st.json(report)


def render_metrics_page() -> None:
    st.header("📋 Policies & Scenarios")
    days = st.slider("Period (days)", 1, 90, 30, key="metrics_days")
    params = _period_params(days)

    policies = api_get("/operator/policy_metrics", params)
    if policies:
        st.subheader("Staffing policies")
        for policy in policies.get("policies", []):
            rate = policy["compliance_rate"]
            col_a, col_b, col_c = st.columns(3)
            col_a.metric(policy["policy_id"], policy["impacted_bookings"], help=policy["scope"])
            col_b.metric("Compliance", "n/a" if rate is None else f"{rate * 100:.1f}%")
            col_c.metric("Breaches", policy["breaches"])
            st.caption(" · ".join(policy["highlights"]))

    scenarios = api_get("/operator/scenario_metrics", params)
    if scenarios:
        st.subheader("Scenarios")
        frame = pd.DataFrame(scenarios.get("scenarios", []))
        if not frame.empty:
            st.dataframe(frame.set_index("scenario_id"), use_container_width=True)


def render_history_page() -> None:
    st.header("🗂️ Matching History")
    days = st.slider("Period (days)", 1, 90, 30, key="history_days")
    col1, col2, col3, col4 = st.columns(4)
    with col1:
        service_category = st.text_input("Service category")
    with col2:
        postal_code = st.text_input("Postal code prefix")
    with col3:
        result = st.selectbox("Result", ["", "assigned", "unassigned"])
    with col4:
        invitation_status = st.selectbox(
            "Invitation status",
            ["", "pending", "viewed", "accepted", "declined", "expired"],
        )
    page = st.number_input("Page", 1, 10_000, 1)

    params: Dict[str, Any] = {**_period_params(days), "page": int(page)}
    for key, value in (
        ("service_category", service_category),
        ("postal_code", postal_code),
        ("result", result),
        ("invitation_status", invitation_status),
    ):
        if value:
            params[key] = value
    listing = api_get("/operator/history", params)
    if not listing:
        return
    st.caption(f"{listing['total']} bookings, page {listing['page']}")
    rows: List[Dict[str, Any]] = []
    for item in listing.get("items", []):
        summary = item["invitations"]
        rows.append(
            {
                "booking_id": item["booking_id"],
                "created_at": item["created_at"],
                "service": item["service_category"],
                "postal_code": item["postal_code"],
                "status": item["status"],
                "result": item["result"],
                "provider": item["provider_id"],
                "invitations": f"{summary['accepted']}/{summary['declined']}/{summary['expired']}/{summary['pending']}",
            }
        )
    if rows:
        st.dataframe(pd.DataFrame(rows), use_container_width=True)
    else:
        st.info("No bookings match these filters.")


def render_config_page() -> None:
    st.header("⚙️ Matching Configuration")
    config = api_get("/operator/config")
    if not config:
        return
    st.caption(f"Current version: {config['version']}")

    weights = config["weights"]
    col1, col2 = st.columns(2)
    with col1:
        distance_w = st.slider("Distance weight", 0.0, 1.0, float(weights.get("distance", 0.0)))
        price_w = st.slider("Price weight", 0.0, 1.0, float(weights.get("price", 0.0)))
        rating_w = st.slider("Rating weight", 0.0, 1.0, float(weights.get("rating", 0.0)))
        reliability_w = st.slider("Reliability weight", 0.0, 1.0, float(weights.get("reliability", 0.0)))
    with col2:
        distance_max = st.number_input("Distance ceiling (km)", 1.0, 200.0, float(config["distance_max_km"]))
        fanout = st.number_input("Fanout size", 1, 50, int(config["fanout_size"]))
        ttl = st.number_input("Invitation TTL (minutes)", 1, 1440, int(config["invitation_ttl_minutes"]))
        max_retry = st.number_input("Max retry attempts", 0, 20, int(config["max_retry_attempts"]))

    if st.button("Save new version", type="primary"):
        updated = api_send(
            "PUT",
            "/operator/config",
            {
                "weights": {
                    "distance": distance_w,
                    "price": price_w,
                    "rating": rating_w,
                    "reliability": reliability_w,
                },
                "distance_max_km": distance_max,
                "fanout_size": int(fanout),
                "invitation_ttl_minutes": int(ttl),
                "max_retry_attempts": int(max_retry),
            },
        )
        if updated:
            st.success(f"Saved version {updated['version']}")


# ==========================================
# Main App Router
# ==========================================
def main() -> None:
    st.sidebar.title("Smart Match Console")
    render_login()
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigation Module",
        [
            "Fallback Queue",
            "Booking Inspector",
            "Guardrails",
            "Overview",
            "Policies & Scenarios",
            "History",
            "Configuration",
        ],
    )

    st.sidebar.markdown("---")
    st.sidebar.caption(f"API: {API_BASE_URL}")
    st.sidebar.caption("Team solver: OR-Tools CP-SAT")

    if page == "Fallback Queue":
        render_queue_page()
    elif page == "Booking Inspector":
        render_booking_page()
    elif page == "Guardrails":
        render_guardrail_page()
    elif page == "Overview":
        render_overview_page()
    elif page == "Policies & Scenarios":
        render_metrics_page()
    elif page == "History":
        render_history_page()
    elif page == "Configuration":
        render_config_page()


if __name__ == "__main__":
    main()
