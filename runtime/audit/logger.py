"""Append-only JSONL audit log of tool calls, results, blocks and errors."""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path

from contracts.audit import AuditEntry, AuditEvent, AuditLogger
from runtime.audit import query as audit_query


class JsonlAuditLogger(AuditLogger):
    """Thread-safe, append-only JSONL audit logger."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def log(self, entry: AuditEntry) -> None:
        line = entry.model_dump_json() + "\n"
        with self._lock, self._path.open("a", encoding="utf-8") as f:
            f.write(line)

    def query_by_request(self, request_id: str) -> list[AuditEntry]:
        return audit_query.query_by_request(self._path, request_id)

    def query(
        self,
        *,
        event: AuditEvent | None = None,
        tool: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[AuditEntry], int]:
        return audit_query.query_filtered(
            self._path, event=event, tool=tool, since=since, until=until, limit=limit, offset=offset
        )

    def tail(self, n: int = 20) -> list[AuditEntry]:
        return audit_query.tail(self._path, n)
