"""Audit contracts for sqlgate.

Every tool invocation leaves a ``tool.call`` entry followed by exactly one
outcome entry (``tool.result``, ``tool.error`` or ``policy.block``), all
sharing the invocation's request_id.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class AuditEvent(str, Enum):
    TOOL_CALL = "tool.call"
    TOOL_RESULT = "tool.result"
    TOOL_ERROR = "tool.error"
    POLICY_BLOCK = "policy.block"


class AuditEntry(BaseModel):
    """One line of the JSONL audit log."""

    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: str
    event: AuditEvent
    app: str = ""
    tool: str = ""
    transport: str = ""  # http, mcp, cli
    detail: dict[str, Any] = {}


class AuditLogger(ABC):
    @property
    @abstractmethod
    def path(self) -> Path:
        """File the entries are appended to."""

    @abstractmethod
    def log(self, entry: AuditEntry) -> None: ...

    @abstractmethod
    def query_by_request(self, request_id: str) -> list[AuditEntry]:
        """Entries of one invocation, oldest first."""

    @abstractmethod
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
        """A page of matching entries, newest first, and the total match count."""

    @abstractmethod
    def tail(self, n: int = 20) -> list[AuditEntry]: ...
