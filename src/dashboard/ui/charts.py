"""Білдери Plotly графіків."""

from __future__ import annotations

import pandas as pd
import plotly.graph_objects as go

from src.dashboard.data_access import (
    SEVERITY_ORDER,
    STATUS_ORDER,
    action_outcomes,
    incident_timeline,
)
from src.dashboard.ui.cards import SEVERITY_COLORS

CHART_CONFIG: dict = {"displayModeBar": False}

_GRID = "rgba(128,128,128,0.10)"
_TEXT = "#e6edf3"

_INCIDENT_STATUS_COLORS = {
    "open": "#ef4444",
    "investigating": "#f59e0b",
    "contained": "#3b82f6",
    "closed": "#22c55e",
}


def _style(fig: go.Figure, title: str, *, height: int = 340, **layout: object) -> go.Figure:
    fig.update_layout(
        template="plotly_dark",
        paper_bgcolor="rgba(0,0,0,0)",
        plot_bgcolor="rgba(0,0,0,0)",
        height=height,
        margin=dict(l=48, r=16, t=44, b=36),
        font=dict(family="-apple-system, Segoe UI, Roboto, sans-serif", size=13, color="#c9d1d9"),
        title=dict(text=title, font=dict(size=14, color=_TEXT), x=0, xanchor="left"),
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1,
                    font=dict(size=11)),
        **layout,
    )
    fig.update_yaxes(gridcolor=_GRID, zeroline=False, title="")
    fig.update_xaxes(title="")
    return fig


def _counts(df: pd.DataFrame, col: str, order: dict[str, int]) -> pd.Series:
    counts = df[col].value_counts()
    return counts.loc[sorted(counts.index, key=lambda v: order.get(v, 99))]


# ── distribution ────────────────────────────────────────────────────────────


def severity_bar(df: pd.DataFrame) -> go.Figure:
    counts = _counts(df, "severity", SEVERITY_ORDER)
    fig = go.Figure(go.Bar(
        x=[s.capitalize() for s in counts.index],
        y=counts.to_list(),
        marker_color=[SEVERITY_COLORS.get(s, "#888") for s in counts.index],
        text=counts.to_list(),
        textposition="outside",
        textfont=dict(size=12, color=_TEXT),
        hovertemplate="%{x}: %{y}<extra></extra>",
    ))
    return _style(fig, "Incidents by Severity", bargap=0.35)


def status_donut(df: pd.DataFrame) -> go.Figure:
    counts = _counts(df, "status", STATUS_ORDER)
    fig = go.Figure(go.Pie(
        labels=[s.capitalize() for s in counts.index],
        values=counts.to_list(),
        hole=0.55,
        sort=False,
        marker=dict(colors=[_INCIDENT_STATUS_COLORS.get(s, "#888") for s in counts.index]),
        hovertemplate="%{label}: %{value} (%{percent})<extra></extra>",
    ))
    return _style(fig, "Incidents by Status")


# ── timeline ────────────────────────────────────────────────────────────────


def incident_timeline_chart(df: pd.DataFrame, *, tz: str = "UTC",
                            freq: str = "min") -> go.Figure | None:
    """Stacked bars of incidents per ``freq`` bucket, one trace per severity.

    ``None`` when there is nothing to plot.
    """
    table = incident_timeline(df, tz=tz, freq=freq)
    if table.empty:
        return None
    fig = go.Figure([
        go.Bar(
            x=table.index,
            y=table[sev],
            name=sev.capitalize(),
            marker_color=SEVERITY_COLORS.get(sev, "#888"),
            hovertemplate="%{x|%H:%M}<br>%{y} " + sev + "<extra></extra>",
        )
        for sev in table.columns
    ])
    return _style(fig, "Incident Timeline", barmode="stack", bargap=0.15)


# ── automated response ──────────────────────────────────────────────────────


def action_outcome_bar(df: pd.DataFrame) -> go.Figure | None:
    outcomes = action_outcomes(df)
    if outcomes.empty:
        return None
    labels = outcomes["title"].str.removeprefix("Security Incident: ")
    fig = go.Figure([
        go.Bar(y=labels, x=outcomes["succeeded"], name="Succeeded", orientation="h",
               marker_color="#22c55e"),
        go.Bar(y=labels, x=outcomes["failed"], name="Failed", orientation="h",
               marker_color="#ef4444"),
    ])
    fig = _style(fig, "Automated Response Actions", barmode="stack",
                 height=max(240, 60 + 34 * len(outcomes)))
    fig.update_yaxes(autorange="reversed")
    return fig
