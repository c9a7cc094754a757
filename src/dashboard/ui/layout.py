"""Page layout — sidebar controls and main-area scaffolding.

``render_sidebar`` populates the left panel and stores the current filter
values in ``st.session_state``. ``render_header`` draws the top title bar.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

import pandas as pd
import streamlit as st

from src.dashboard.data_access import SEVERITY_ORDER, STATUS_ORDER
from src.dashboard.ui.state import FILTER_KEYS, reset_filters


@dataclass
class SidebarState:
    """Values collected from sidebar controls."""
    severities: list[str]
    statuses: list[str]
    titles: list[str]
    escalated_only: bool
    horizon_hours: float


def _options(df: pd.DataFrame | None, col: str, order: dict[str, int] | None = None) -> list[str]:
    if df is None or col not in df.columns:
        return []
    values = [str(v) for v in df[col].dropna().unique()]
    if order:
        return sorted(values, key=lambda v: order.get(v, 99))
    return sorted(values)


def _filter_select(label: str, key: str, options: list[str]) -> list[str]:
    """Multiselect over *options*; everything selected until the user narrows it."""
    st.session_state[FILTER_KEYS[key]] = options
    if key in st.session_state:
        st.session_state[key] = [v for v in st.session_state[key] if v in options]
    else:
        st.session_state[key] = list(options)
    return st.multiselect(label, options=options, key=key)


# ── header ──────────────────────────────────────────────────────────────────


def render_header() -> None:
    st.markdown(
        '<h1 class="page-title">Security Operations Dashboard</h1>'
        '<p class="page-subtitle">'
        "Incidents, alerts and automated responses from the real-time monitor."
        "</p>",
        unsafe_allow_html=True,
    )


# ── sidebar ─────────────────────────────────────────────────────────────────


def render_sidebar(incidents_df: pd.DataFrame | None) -> SidebarState:
    """Draw sidebar controls and return current selections."""

    with st.sidebar:
        st.markdown('<p class="sidebar-brand">SecOps</p>', unsafe_allow_html=True)
        st.caption("Correlation & Automated Response")
        st.divider()

        st.markdown("##### Filter Incidents")

        severities = _filter_select("Severity", "f_severities",
                                    _options(incidents_df, "severity", SEVERITY_ORDER))
        statuses = _filter_select("Status", "f_statuses",
                                  _options(incidents_df, "status", STATUS_ORDER))
        titles = _filter_select("Incident type", "f_titles", _options(incidents_df, "title"))

        escalated_only = st.toggle("Escalated only", key="f_escalated")

        horizon_hours = st.number_input(
            "Horizon (hours)",
            min_value=0.0,
            max_value=24.0 * 365,
            step=1.0,
            key="f_horizon",
            help="Show incidents within the last N hours. 0 = show all.",
        )
        st.button("Reset filters", on_click=reset_filters, width="stretch")

        st.divider()

        st.markdown("##### Auto-refresh")
        st.toggle("Enable auto-refresh", key="auto_refresh")
        st.slider(
            "Refresh interval (sec)",
            min_value=2,
            max_value=60,
            step=1,
            key="refresh_interval",
            disabled=not st.session_state.get("auto_refresh", False),
        )

        now_str = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
        st.markdown(
            f'<p class="refresh-timestamp">Last refresh: {now_str}</p>',
            unsafe_allow_html=True,
        )

    return SidebarState(
        severities=severities,
        statuses=statuses,
        titles=titles,
        escalated_only=escalated_only,
        horizon_hours=horizon_hours,
    )
