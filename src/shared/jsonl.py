"""JSONL helpers: append-only writes and offset-based tailing."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


def append_jsonl(path: str | Path, record: dict[str, Any]) -> None:
    """Append one JSON object as a single line and flush it to disk."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str) + "\n")
        fh.flush()


def read_jsonl_from(path: str | Path, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
    """Read complete lines appended after byte *offset*.

    Returns the parsed objects and the new offset. A trailing line without a
    newline is left for the next call (the writer may still be mid-line).
    Malformed lines are skipped with a warning.
    """
    p = Path(path)
    if not p.exists():
        return [], offset
    records: list[dict[str, Any]] = []
    with p.open("rb") as fh:
        fh.seek(offset)
        chunk = fh.read()
    end = chunk.rfind(b"\n")
    if end < 0:
        return [], offset
    complete = chunk[: end + 1]
    for line_no, raw in enumerate(complete.splitlines(), 1):
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            log.warning("Skipping malformed line %d after offset %d in %s: %s",
                        line_no, offset, p.name, exc)
            continue
        if isinstance(obj, dict):
            records.append(obj)
        else:
            log.warning("Skipping non-object line %d in %s", line_no, p.name)
    return records, offset + len(complete)
