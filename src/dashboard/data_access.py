"""Шар завантаження та фільтрації даних.

Дашборд лише читає файли, які пише монітор:
  out/incidents.jsonl  — журнал знімків інцидентів (останній знімок перемагає)
  out/alerts.jsonl     — стрічка оповіщень
  out/stats.json       — знімок лічильників монітора

Каталог можна змінити змінною середовища ``SECPIPE_OUT_DIR``.
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pandas as pd

log = logging.getLogger(__name__)

# ── paths (relative to repo root) ───────────────────────────────────────────

ROOT = Path(__file__).resolve().parent.parent.parent
OUT_DIR = Path(os.environ.get("SECPIPE_OUT_DIR", ROOT / "out"))
INCIDENTS_PATH = OUT_DIR / "incidents.jsonl"
ALERTS_PATH = OUT_DIR / "alerts.jsonl"
STATS_PATH = OUT_DIR / "stats.json"

# ── retry / stability settings ──────────────────────────────────────────────

_MAX_READ_RETRIES = 3
_READ_RETRY_DELAY_SEC = 0.15  # 150 ms between retries

SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3, "info": 4}
STATUS_ORDER = {"open": 0, "investigating": 1, "contained": 2, "closed": 3}

INCIDENT_COLUMNS = [
    "id",
    "threat_id",
    "created_at",
    "updated_at",
    "severity",
    "status",
    "title",
    "escalated",
    "affected_resources",
    "actions_total",
    "actions_failed",
    "description",
]


# ── file info helpers ───────────────────────────────────────────────────────


def file_mtime(path: Path) -> float:
    """Повертає mtime як UNIX timestamp, або 0.0 якщо файл відсутній."""
    try:
        return os.path.getmtime(path) if path.exists() else 0.0
    except OSError:
        return 0.0


def file_mtime_str(path: Path) -> str:
    ts = file_mtime(path)
    if ts == 0.0:
        return "N/A"
    return datetime.fromtimestamp(ts, tz=UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


def file_size(path: Path) -> int:
    try:
        return path.stat().st_size if path.exists() else 0
    except OSError:
        return 0


# ── raw readers ─────────────────────────────────────────────────────────────


def read_jsonl_records(path: Path) -> list[dict[str, Any]] | None:
    """Зчитує всі JSON-об'єкти з JSONL. None якщо файл відсутній.

    Пошкоджені рядки (зокрема недописаний останній) пропускаються.
    """
    if not path.exists():
        return None
    records: list[dict[str, Any]] = []
    with open(path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                log.debug("Skipping malformed line in %s", path.name)
                continue
            if isinstance(obj, dict):
                records.append(obj)
    return records


def load_stats(path: Path = STATS_PATH) -> dict[str, Any] | None:
    """Завантажує знімок лічильників монітора з повторними спробами.

    Файл замінюється атомарно, але між видаленням і появою може бути
    коротке вікно; тому кілька спроб.
    """
    for attempt in range(1, _MAX_READ_RETRIES + 1):
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
            return data if isinstance(data, dict) else None
        except (OSError, json.JSONDecodeError) as exc:
            log.debug("stats read attempt %d/%d failed: %s", attempt, _MAX_READ_RETRIES, exc)
            if attempt < _MAX_READ_RETRIES:
                time.sleep(_READ_RETRY_DELAY_SEC)
    return None


# ── loaders ─────────────────────────────────────────────────────────────────


def _incident_row(inc: dict[str, Any]) -> dict[str, Any]:
    actions = inc.get("response_actions") or []
    return {
        "id": inc.get("id"),
        "threat_id": inc.get("threat_id"),
        "created_at": inc.get("created_at"),
        "updated_at": inc.get("updated_at"),
        "severity": inc.get("severity"),
        "status": inc.get("status"),
        "title": inc.get("title", ""),
        "escalated": bool(inc.get("escalated", False)),
        "affected_resources": ", ".join(inc.get("affected_resources") or []),
        "actions_total": len(actions),
        "actions_failed": sum(1 for a in actions if not a.get("success", False)),
        "description": inc.get("description", ""),
    }


def incidents_frame(records: list[dict[str, Any]]) -> pd.DataFrame:
    """Snapshot records → one row per incident (latest snapshot wins)."""
    latest: dict[str, dict[str, Any]] = {}
    for rec in records:
        inc = rec.get("incident")
        if isinstance(inc, dict) and inc.get("id"):
            latest[inc["id"]] = inc
    df = pd.DataFrame([_incident_row(i) for i in latest.values()], columns=INCIDENT_COLUMNS)
    for col in ("created_at", "updated_at"):
        df[col] = pd.to_datetime(df[col], utc=True, errors="coerce")
    return df


def load_incidents(path: Path = INCIDENTS_PATH) -> pd.DataFrame | None:
    """Завантажує out/incidents.jsonl. Повертає None якщо відсутній."""
    records = read_jsonl_records(path)
    if records is None:
        return None
    return incidents_frame(records)


def load_alerts(path: Path = ALERTS_PATH, limit: int = 200) -> pd.DataFrame | None:
    """Останні *limit* оповіщень, найновіші першими."""
    records = read_jsonl_records(path)
    if records is None:
        return None
    df = pd.DataFrame(records[-limit:])
    if df.empty:
        return df
    if "created_at" in df.columns:
        df["created_at"] = pd.to_datetime(df["created_at"], utc=True, errors="coerce")
    if "channels" in df.columns:
        df["channels"] = df["channels"].apply(
            lambda c: ", ".join(c) if isinstance(c, list) else str(c)
        )
    return df.iloc[::-1].reset_index(drop=True)


# ── aggregates ──────────────────────────────────────────────────────────────


def incident_timeline(df: pd.DataFrame, *, tz: str = "UTC", freq: str = "min") -> pd.DataFrame:
    """Кількість інцидентів за інтервал ``freq`` у розрізі severity.

    Рядки — інтервали (порожні заповнюються нулями), колонки — severity
    у порядку SEVERITY_ORDER. Час переводиться в ``tz`` і стає naive,
    бо Plotly інакше повертає його в UTC.
    """
    if df.empty or "created_at" not in df.columns:
        return pd.DataFrame()
    tmp = df[["created_at", "severity"]].dropna()
    if tmp.empty:
        return pd.DataFrame()
    bucket = tmp["created_at"].dt.tz_convert(tz).dt.tz_localize(None).dt.floor(freq)
    table = pd.crosstab(bucket.rename("bucket"), tmp["severity"])
    full = pd.date_range(table.index.min(), table.index.max(), freq=freq, name="bucket")
    table = table.reindex(full, fill_value=0)
    cols = sorted(table.columns, key=lambda s: SEVERITY_ORDER.get(s, 99))
    return table[cols]


def action_outcomes(df: pd.DataFrame) -> pd.DataFrame:
    """Виконані / невдалі дії автоматичної відповіді за типом інциденту."""
    if df.empty:
        return pd.DataFrame(columns=["title", "succeeded", "failed"])
    grouped = df.groupby("title")[["actions_total", "actions_failed"]].sum()
    out = pd.DataFrame({
        "title": grouped.index,
        "succeeded": (grouped["actions_total"] - grouped["actions_failed"]).to_numpy(),
        "failed": grouped["actions_failed"].to_numpy(),
    })
    out = out[(out["succeeded"] + out["failed"]) > 0]
    return out.sort_values("failed", ascending=False).reset_index(drop=True)


# ── filtering ───────────────────────────────────────────────────────────────


def filter_incidents(
    df: pd.DataFrame,
    *,
    severities: list[str] | None = None,
    statuses: list[str] | None = None,
    titles: list[str] | None = None,
    escalated_only: bool = False,
    horizon_hours: float | None = None,
) -> pd.DataFrame:
    """Застосовує фільтри sidebar до incidents."""
    mask = pd.Series(True, index=df.index)

    if severities:
        mask &= df["severity"].isin(severities)
    if statuses:
        mask &= df["status"].isin(statuses)
    if titles:
        mask &= df["title"].isin(titles)
    if escalated_only:
        mask &= df["escalated"]

    if horizon_hours and horizon_hours > 0 and "created_at" in df.columns:
        latest = df["created_at"].max()
        if pd.notna(latest):
            cutoff = latest - pd.Timedelta(hours=horizon_hours)
            mask &= df["created_at"] >= cutoff

    return df.loc[mask].copy()
