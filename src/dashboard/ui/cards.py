"""Білдери HTML KPI карток."""

from __future__ import annotations

from typing import Any

# ── canonical severity / status colours ─────────────────────────────────────

SEVERITY_COLORS: dict[str, str] = {
    "critical": "#a855f7",
    "high": "#ef4444",
    "medium": "#f59e0b",
    "low": "#22c55e",
    "info": "#64748b",
}

STATUS_COLORS: dict[str, str] = {
    "running": "#22c55e",
    "starting": "#f59e0b",
    "stopping": "#f59e0b",
    "stopped": "#64748b",
    "error": "#ef4444",
}


def kpi_card(label: str, value: str, sub: str = "", accent: str = "#8b5cf6") -> str:
    """Побудова однієї KPI картки."""
    return (
        f'<div class="kpi-card" style="border-top: 3px solid {accent}">'
        f'  <div class="kpi-card-label">{label}</div>'
        f'  <div class="kpi-card-value">{value}</div>'
        f'  <div class="kpi-card-sub">{sub}</div>'
        f"</div>"
    )


def monitor_cards(stats: dict[str, Any]) -> list[str]:
    """KPI картки зі знімка ``stats.json``."""
    status = str(stats.get("system_status", "stopped"))
    uptime_min = float(stats.get("uptime_sec") or 0.0) / 60.0
    throttled = int(stats.get("auto_responses_throttled") or 0)
    failed = int(stats.get("alerts_failed") or 0)
    return [
        kpi_card(
            "Monitor",
            status.upper(),
            f"uptime {uptime_min:.0f} min · cursor {stats.get('cursor', 0)}",
            STATUS_COLORS.get(status, "#888"),
        ),
        kpi_card(
            "Events processed",
            f"{int(stats.get('events_processed') or 0):,}",
            f"last check {stats.get('last_check') or 'N/A'}",
        ),
        kpi_card(
            "Incidents",
            f"{int(stats.get('incidents_created') or 0):,}",
            f"{int(stats.get('threats_detected') or 0):,} threats detected",
            SEVERITY_COLORS["high"],
        ),
        kpi_card(
            "Auto-responses",
            f"{int(stats.get('auto_responses_triggered') or 0):,}",
            f"avg {float(stats.get('average_response_time') or 0.0):.0f} ms · {throttled} throttled",
            SEVERITY_COLORS["low"],
        ),
        kpi_card(
            "Alerts sent",
            f"{int(stats.get('alerts_sent') or 0):,}",
            f"{failed} failed",
            SEVERITY_COLORS["medium"],
        ),
    ]
