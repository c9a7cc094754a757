"""Звітування: запис CSV, TXT, JSON, PNG."""

from __future__ import annotations

import csv
import io
import json
import logging
import os
import tempfile
from pathlib import Path

from src.analyzer.metrics import IncidentSummary, MonitoringStats
from src.contracts.incident import SecurityIncident
from src.contracts.threat import EventCorrelation

log = logging.getLogger(__name__)

CORRELATION_CSV_COLUMNS = [
    "id",
    "rule_id",
    "rule_name",
    "risk_score",
    "confidence",
    "priority",
    "event_count",
    "time_span_sec",
    "frequency",
    "unique_ips",
    "unique_actors",
    "unique_tenants",
    "correlation_key",
    "first_seen",
    "last_seen",
    "affected_resources",
]


def _atomic_write(path: str, content: str) -> None:
    """Атомарно записує content у файл path."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(
        dir=str(target.parent),
        prefix=f".{target.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


# ═══════════════════════════════════════════════════════════════════════════
#  CSV writers
# ═══════════════════════════════════════════════════════════════════════════


def _correlation_row(c: EventCorrelation) -> str:
    p = c.pattern
    vals = [
        c.id,
        c.rule_id,
        c.rule_name,
        f"{c.risk_score:.2f}",
        f"{c.confidence:.0f}",
        str(c.priority),
        str(p.event_count),
        f"{p.time_span.total_seconds():.0f}",
        f"{p.frequency:.4f}",
        str(p.unique_ips),
        str(p.unique_actors),
        str(p.unique_tenants),
        "|".join(c.correlation_key),
        c.events[0].timestamp.isoformat().replace("+00:00", "Z"),
        c.events[-1].timestamp.isoformat().replace("+00:00", "Z"),
        ";".join(c.affected_resources),
    ]
    buf = io.StringIO()
    csv.writer(buf).writerow(vals)
    return buf.getvalue().rstrip("\r\n")


def write_correlations_csv(
    correlations: list[EventCorrelation],
    path: str,
) -> None:
    lines = [",".join(CORRELATION_CSV_COLUMNS)]
    for c in correlations:
        lines.append(_correlation_row(c))
    _atomic_write(path, "\n".join(lines) + "\n")
    log.info("Wrote correlations → %s (%d rows)", path, len(correlations))


def write_incidents_csv(
    incidents: list[SecurityIncident],
    path: str,
) -> None:
    lines = [SecurityIncident.csv_header()]
    for inc in incidents:
        lines.append(inc.to_csv_row())
    _atomic_write(path, "\n".join(lines) + "\n")
    log.info("Wrote incidents → %s (%d rows)", path, len(incidents))


def write_stats_json(stats: MonitoringStats, path: str) -> None:
    """Snapshot of monitor counters (read by the dashboard)."""
    _atomic_write(path, json.dumps(stats.to_dict(), indent=2, ensure_ascii=False) + "\n")
    log.debug("Wrote stats → %s", path)


# ═══════════════════════════════════════════════════════════════════════════
#  TXT report
# ═══════════════════════════════════════════════════════════════════════════


def write_report_txt(
    correlations: list[EventCorrelation],
    summary: IncidentSummary,
    path: str,
    stats: MonitoringStats | None = None,
) -> None:
    """Генерує текстовий звіт."""
    lines: list[str] = []

    lines.append("=" * 60)
    lines.append("  Security Correlation & Response Report")
    lines.append("=" * 60)
    lines.append("")

    lines.append(f"--- Correlations ({len(correlations)}) ---")
    for i, c in enumerate(correlations, 1):
        lines.append(
            f"  {i:>2}. [{c.risk_score:6.2f}] {c.rule_name} "
            f"— {c.pattern.event_count} events, {c.pattern.unique_ips} IPs, "
            f"key={'|'.join(c.correlation_key) or 'all'}"
        )
    if not correlations:
        lines.append("  (none)")
    lines.append("")

    lines.append("--- Incidents ---")
    lines.append(f"  Total:            {summary.incidents_total}")
    lines.append(f"  Open:             {summary.open}")
    lines.append(f"  Escalated:        {summary.escalated}")
    lines.append(f"  With response:    {summary.with_response}")
    lines.append(f"  Failed actions:   {summary.failed_actions}")
    sev_str = ", ".join(f"{k}={v}" for k, v in sorted(summary.by_severity.items()))
    lines.append(f"  By severity:      {sev_str}")
    st_str = ", ".join(f"{k}={v}" for k, v in sorted(summary.by_status.items()))
    lines.append(f"  By status:        {st_str}")
    lines.append("")

    if stats is not None:
        lines.append("--- Monitor ---")
        lines.append(f"  Status:           {stats.system_status.value}")
        lines.append(f"  Cursor:           {stats.cursor}")
        lines.append(f"  Events processed: {stats.events_processed}")
        lines.append(f"  Threats detected: {stats.threats_detected}")
        lines.append(f"  Auto-responses:   {stats.auto_responses_triggered} "
                     f"(throttled {stats.auto_responses_throttled})")
        lines.append(f"  Alerts sent:      {stats.alerts_sent} (failed {stats.alerts_failed})")
        lines.append(f"  Avg response:     {stats.average_response_time:.1f} ms")
        lines.append("")

    lines.append("=" * 60)
    _atomic_write(path, "\n".join(lines) + "\n")
    log.info("Wrote report → %s", path)


# ═══════════════════════════════════════════════════════════════════════════
#  Plots (optional)
# ═══════════════════════════════════════════════════════════════════════════


def write_plots(
    correlations: list[EventCorrelation],
    summary: IncidentSummary,
    out_dir: str,
) -> None:
    """Generate PNG charts into out_dir/plots/."""
    try:
        import matplotlib

        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except ImportError:
        log.warning("matplotlib not installed — skipping plots")
        return

    plots_dir = Path(out_dir) / "plots"
    plots_dir.mkdir(parents=True, exist_ok=True)

    # ── 1. Correlation risk by rule ──────────────────────────────────
    if correlations:
        fig, ax = plt.subplots(figsize=(9, 5))
        labels = [f"{c.rule_id}\n{'|'.join(c.correlation_key)}" for c in correlations]
        risks = [c.risk_score for c in correlations]
        ax.barh(labels, risks, color="#e74c3c", edgecolor="black", linewidth=0.5)
        ax.set_xlim(0, 100)
        ax.invert_yaxis()
        ax.set_xlabel("Risk score")
        ax.set_title("Correlations by Risk")
        fig.tight_layout()
        fig.savefig(str(plots_dir / "correlation_risk.png"), dpi=150)
        plt.close(fig)
        log.info("Wrote plots/correlation_risk.png")

    # ── 2. Incidents by severity ─────────────────────────────────────
    order = ["critical", "high", "medium", "low"]
    colors = ["#8e44ad", "#e74c3c", "#f39c12", "#27ae60"]
    counts = [summary.by_severity.get(s, 0) for s in order]
    fig, ax = plt.subplots(figsize=(7, 4))
    ax.bar(order, counts, color=colors, edgecolor="black", linewidth=0.5)
    ax.set_ylabel("Incidents")
    ax.set_title("Incidents by Severity")
    fig.tight_layout()
    fig.savefig(str(plots_dir / "incidents_by_severity.png"), dpi=150)
    plt.close(fig)
    log.info("Wrote plots/incidents_by_severity.png")
