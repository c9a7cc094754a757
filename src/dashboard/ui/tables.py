"""Відображення таблиць інцидентів та оповіщень."""

from __future__ import annotations

import pandas as pd
import streamlit as st
from streamlit import column_config as colcfg

from src.dashboard.data_access import SEVERITY_ORDER

_INCIDENT_COLS = [
    "created_at",
    "id",
    "severity",
    "status",
    "title",
    "escalated",
    "affected_resources",
    "actions_total",
    "actions_failed",
]

_INCIDENT_LABELS = {
    "created_at": "Time",
    "id": "Incident",
    "severity": "Severity",
    "status": "Status",
    "title": "Title",
    "escalated": "Escalated",
    "affected_resources": "Affected",
    "actions_total": "Actions",
    "actions_failed": "Failed",
}

_INCIDENT_CONFIG = {
    "Time": colcfg.DatetimeColumn("Time", format="MMM DD, YYYY  HH:mm:ss"),
    "Escalated": colcfg.CheckboxColumn("Escalated"),
}

_ALERT_COLS = ["created_at", "level", "title", "message", "channels", "incident_id"]


def render_incident_table(df: pd.DataFrame) -> None:
    """Interactive incident table: critical first, then newest first."""
    if df.empty:
        st.info("No incidents to display.")
        return

    cols = [c for c in _INCIDENT_COLS if c in df.columns]
    view = df[cols].copy()
    view["_sev_ord"] = view["severity"].map(SEVERITY_ORDER).fillna(99)
    view = view.sort_values(["_sev_ord", "created_at"], ascending=[True, False])
    view = view.drop(columns=["_sev_ord"]).rename(columns=_INCIDENT_LABELS)

    st.caption(f"Total incidents: {len(view)}")
    st.dataframe(
        view,
        hide_index=True,
        width="stretch",
        height=min(len(view) * 36 + 42, 600),
        column_config=_INCIDENT_CONFIG,
        key="tbl_incidents",
    )


def render_alert_table(df: pd.DataFrame) -> None:
    if df.empty:
        st.info("No alerts yet.")
        return
    cols = [c for c in _ALERT_COLS if c in df.columns]
    st.dataframe(
        df[cols],
        hide_index=True,
        width="stretch",
        height=min(len(df) * 36 + 42, 400),
        key="tbl_alerts",
    )
