"""Read-side helpers over the audit log file.

Standalone functions so the CLI and HTTP endpoints can query a log
without holding a logger instance.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from contracts.audit import AuditEntry, AuditEvent


def read_entries(log_path: str | Path) -> list[AuditEntry]:
    """Every entry in the log, oldest first.  A missing file is empty."""
    p = Path(log_path)
    if not p.exists():
        return []
    with p.open("r", encoding="utf-8") as f:
        return [AuditEntry.model_validate_json(line) for line in f if line.strip()]


def query_by_request(log_path: str | Path, request_id: str) -> list[AuditEntry]:
    """Return all audit entries for a given request_id."""
    return [e for e in read_entries(log_path) if e.request_id == request_id]


def tail(log_path: str | Path, n: int = 20) -> list[AuditEntry]:
    """Return the last N entries from the audit log."""
    return read_entries(log_path)[-n:] if n > 0 else []


def query_filtered(
    log_path: str | Path,
    *,
    event: AuditEvent | None = None,
    tool: str | None = None,
    request_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[AuditEntry], int]:
    """Return a page of matching entries, newest first, and the match count.

    The log is append-only, so file order is chronological.
    """
    matches = [
        e
        for e in read_entries(log_path)
        if (event is None or e.event == event)
        and (tool is None or e.tool == tool)
        and (request_id is None or e.request_id == request_id)
        and (since is None or e.ts >= since)
        and (until is None or e.ts <= until)
    ]
    matches.reverse()
    return matches[offset : offset + limit], len(matches)
