"""Головний файл дашборду на Streamlit.

    streamlit run src/dashboard/app.py
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import streamlit as st

# ── page config (MUST be the first Streamlit call) ───────────────────────────

st.set_page_config(
    page_title="Security Operations Dashboard",
    layout="wide",
    initial_sidebar_state="expanded",
)

# ── inject theme CSS ────────────────────────────────────────────────────────

_CSS_PATH = Path(__file__).resolve().parent / "styles" / "theme.css"
if _CSS_PATH.exists():
    st.markdown(f"<style>{_CSS_PATH.read_text()}</style>", unsafe_allow_html=True)

# ── local imports (after page config) ───────────────────────────────────────

from src.dashboard.data_access import (  # noqa: E402
    ALERTS_PATH,
    INCIDENTS_PATH,
    STATS_PATH,
    file_mtime_str,
    file_size,
    filter_incidents,
    load_alerts,
    load_incidents,
    load_stats,
)
from src.dashboard.ui.cards import monitor_cards  # noqa: E402
from src.dashboard.ui.charts import (  # noqa: E402
    CHART_CONFIG,
    action_outcome_bar,
    incident_timeline_chart,
    severity_bar,
    status_donut,
)
from src.dashboard.ui.layout import render_header, render_sidebar  # noqa: E402
from src.dashboard.ui.state import init_state  # noqa: E402
from src.dashboard.ui.tables import render_alert_table, render_incident_table  # noqa: E402

init_state()

_initial_incidents = load_incidents()
render_sidebar(_initial_incidents)
render_header()


# ═════════════════════════════════════════════════════════════════════════════
#   LIVE DATA SECTION -- re-executed every N seconds when auto-refresh is on
# ═════════════════════════════════════════════════════════════════════════════

_auto = st.session_state.get("auto_refresh", False)
_interval = st.session_state.get("refresh_interval", 5)


def _effective(selected: list[str], opts_key: str) -> list[str] | None:
    # all initial options still selected → include values that appeared since
    return None if set(selected) == set(st.session_state.get(opts_key, [])) else selected


@st.fragment(run_every=timedelta(seconds=_interval) if _auto else None)
def _live_data_section() -> None:
    st.session_state["refresh_tick"] = st.session_state.get("refresh_tick", 0) + 1

    stats = load_stats()
    df_incidents_raw = load_incidents()
    df_alerts = load_alerts()

    if stats is None and df_incidents_raw is None:
        st.markdown(
            '<div class="no-data-box">'
            "<strong>No monitor output yet.</strong> "
            "The files <code>out/stats.json</code> and "
            "<code>out/incidents.jsonl</code> were not found.<br><br>"
            "Start the monitor:<br>"
            "<code>python -m src.analyzer monitor</code>"
            "</div>",
            unsafe_allow_html=True,
        )
        return

    # ── KPI CARDS ───────────────────────────────────────────────────
    if stats is not None:
        cards = monitor_cards(stats)
        for col, html in zip(st.columns(len(cards)), cards):
            with col:
                st.markdown(html, unsafe_allow_html=True)

    df_incidents = None
    if df_incidents_raw is not None:
        df_incidents = filter_incidents(
            df_incidents_raw,
            severities=_effective(st.session_state.get("f_severities", []), "_sev_opts"),
            statuses=_effective(st.session_state.get("f_statuses", []), "_status_opts"),
            titles=_effective(st.session_state.get("f_titles", []), "_title_opts"),
            escalated_only=st.session_state.get("f_escalated", False),
            horizon_hours=st.session_state.get("f_horizon", 0.0),
        )

    # ── CHARTS ──────────────────────────────────────────────────────
    st.markdown('<div class="section-gap"></div>', unsafe_allow_html=True)
    if df_incidents is not None and not df_incidents.empty:
        c1, c2 = st.columns(2)
        with c1:
            st.plotly_chart(severity_bar(df_incidents), width="stretch",
                            config=CHART_CONFIG, key="chart_sev")
        with c2:
            st.plotly_chart(status_donut(df_incidents), width="stretch",
                            config=CHART_CONFIG, key="chart_status")
        tz = st.session_state.get("display_tz", "UTC")
        timeline = incident_timeline_chart(df_incidents, tz=tz)
        if timeline is not None:
            st.plotly_chart(timeline, width="stretch", config=CHART_CONFIG, key="chart_timeline")
            st.caption(f"Incident rows: {len(df_incidents)} | Time axis: {tz}")
        outcomes = action_outcome_bar(df_incidents)
        if outcomes is not None:
            st.plotly_chart(outcomes, width="stretch", config=CHART_CONFIG, key="chart_actions")

    # ── TABLES ──────────────────────────────────────────────────────
    st.markdown('<p class="section-label">Incidents</p>', unsafe_allow_html=True)
    if df_incidents is not None:
        render_incident_table(df_incidents)
    else:
        st.info("No incidents data available.")

    st.markdown('<p class="section-label">Recent Alerts</p>', unsafe_allow_html=True)
    if df_alerts is not None:
        render_alert_table(df_alerts)
    else:
        st.info("No alerts data available.")

    # ── DIAGNOSTICS ─────────────────────────────────────────────────
    with st.expander("Diagnostics (live debug info)", expanded=False):
        _now = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
        task_errors = (stats or {}).get("task_errors") or {}
        st.markdown(
            f"""
| Metric | Value |
|---|---|
| **Refresh tick** | {st.session_state.get("refresh_tick", "?")} |
| **Last refresh (UI)** | {_now} |
| **stats.json mtime** | {file_mtime_str(STATS_PATH)} |
| **incidents.jsonl size** | {file_size(INCIDENTS_PATH)} bytes |
| **alerts.jsonl size** | {file_size(ALERTS_PATH)} bytes |
| **Skipped ticks** | {(stats or {}).get("skipped_ticks", "N/A")} |
| **Task errors** | {", ".join(f"{k}={v}" for k, v in task_errors.items()) or "none"} |
""",
        )


_live_data_section()
