"""Tool SDK contracts.

Every sqlgate tool implements BaseTool.  The runtime resolves its source,
binds invocation parameters, runs the tool, and audit-logs the result.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

from contracts.source import ResolvedSource


# ── Data models ──────────────────────────────────────────────────────


class ToolDefinition(BaseModel):
    """OpenAI function-calling compatible schema for a tool."""

    name: str
    description: str
    input_schema: dict[str, Any]   # JSON Schema
    auth_required: list[str] = []


class ToolInput(BaseModel):
    tool_name: str
    arguments: dict[str, Any]
    call_id: str


class ToolOutput(BaseModel):
    call_id: str
    tool_name: str
    result: Any = None
    error: str | None = None
    error_kind: str | None = None
    error_detail: dict[str, Any] = {}
    retryable: bool = False
    success: bool = True


# ── Invocation parameters ────────────────────────────────────────────


@dataclass(frozen=True)
class ParamValue:
    name: str
    value: Any


class ParamValues(list):
    """Ordered (name, value) pairs supplied for one invocation."""

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> ParamValues:
        return cls(ParamValue(name=k, value=v) for k, v in values.items())

    @classmethod
    def coerce(cls, values: ParamValues | Mapping[str, Any] | Iterable[ParamValue]) -> ParamValues:
        if isinstance(values, ParamValues):
            return values
        if isinstance(values, Mapping):
            return cls.from_mapping(values)
        return cls(values)

    def names(self) -> list[str]:
        return [p.name for p in self]

    def as_map(self) -> dict[str, Any]:
        return {p.name: p.value for p in self}


# ── Context passed to every tool invocation ──────────────────────────


@dataclass
class ToolContext:
    """Runtime context supplied to a tool's invoke() method."""

    request_id: str
    app_name: str = ""
    access_token: str | None = None
    verified_auth_services: list[str] = field(default_factory=list)
    timeout: float | None = None


# ── Abstract base class ─────────────────────────────────────────────


class BaseTool(ABC):
    """Abstract base class that every sqlgate tool must implement."""

    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Return the tool's function-calling schema."""
        ...

    @abstractmethod
    def initialize(self, sources: Mapping[str, ResolvedSource]) -> None:
        """Resolve the tool's source.  Raises ``ConfigError``."""
        ...

    @abstractmethod
    async def invoke(self, params: ParamValues | Mapping[str, Any], ctx: ToolContext) -> Any:
        """Execute the tool.  Raises a ``ToolError`` subclass on failure."""
        ...

    def authorized(self, verified_auth_services: Iterable[str]) -> bool:
        required = self.definition().auth_required
        if not required:
            return True
        return bool(set(required) & set(verified_auth_services))

    def requires_client_authorization(self) -> bool:
        return False
