"""Error kinds raised by tools and surfaced to callers.

Inside the runtime these are ordinary exceptions.  The tool router turns
them into structured ``ToolOutput`` records at the transport boundary.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from contracts.policy import PolicyDecision


class ToolError(Exception):
    """Base class for every error a tool invocation can report."""

    kind = "tool_error"
    retryable = False

    def detail(self) -> dict[str, Any]:
        return {}


class ConfigError(ToolError):
    """Manifest, source reference, or capability problem found at load time."""

    kind = "config_error"


class ParameterError(ToolError):
    """Missing or malformed invocation input. No backend call was made."""

    kind = "parameter_error"


class UnauthorizedError(ToolError):
    """The caller did not present any of the tool's required auth services."""

    kind = "unauthorized"


class PolicyDenied(ToolError):
    """A source policy rejected the statement before real execution."""

    kind = "policy_denied"

    def __init__(self, decision: PolicyDecision) -> None:
        super().__init__(f"Policy denied: {decision.reason}")
        self.decision = decision

    def detail(self) -> dict[str, Any]:
        return {
            "rule": self.decision.rule,
            "denial": self.decision.kind.value if self.decision.kind else "",
            "dataset": self.decision.dataset,
        }


class BackendError(ToolError):
    """Transport failure or engine-reported execution error."""

    kind = "backend_error"

    def __init__(
        self,
        message: str,
        *,
        transport: bool = False,
        status: int | None = None,
        reason: str = "",
    ) -> None:
        super().__init__(message)
        self.transport = transport
        self.status = status
        self.reason = reason

    def detail(self) -> dict[str, Any]:
        return {"transport": self.transport, "status": self.status, "reason": self.reason}


class NormalizationError(ToolError):
    """A backend value has no generic mapping."""

    kind = "normalization_error"

    def __init__(self, message: str, *, column: str, type_name: str) -> None:
        super().__init__(message)
        self.column = column
        self.type_name = type_name

    def detail(self) -> dict[str, Any]:
        return {"column": self.column, "type": self.type_name}


class SessionBusyError(ToolError):
    """No backend session became free within the acquisition timeout."""

    kind = "session_busy"
    retryable = True
