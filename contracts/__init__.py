"""Shared contracts — source of truth for all sqlgate interfaces."""

from contracts.audit import AuditEntry, AuditEvent, AuditLogger
from contracts.errors import (
    BackendError,
    ConfigError,
    NormalizationError,
    ParameterError,
    PolicyDenied,
    SessionBusyError,
    ToolError,
    UnauthorizedError,
)
from contracts.execution import (
    ColumnSchema,
    ExecutionRequest,
    QueryPlan,
    QueryResult,
    RowStream,
    Session,
    TableRef,
)
from contracts.manifest import Manifest, SourceConfig, ToolConfig, AuditConfig, WriteMode
from contracts.policy import DenialKind, PolicyDecision, PolicyGate, PolicyVerdict
from contracts.source import QueryBackend, ResolvedSource, SessionProvider
from contracts.tool_sdk import (
    BaseTool,
    ParamValue,
    ParamValues,
    ToolContext,
    ToolDefinition,
    ToolInput,
    ToolOutput,
)

__all__ = [
    # audit
    "AuditEntry",
    "AuditEvent",
    "AuditLogger",
    # errors
    "BackendError",
    "ConfigError",
    "NormalizationError",
    "ParameterError",
    "PolicyDenied",
    "SessionBusyError",
    "ToolError",
    "UnauthorizedError",
    # execution
    "ColumnSchema",
    "ExecutionRequest",
    "QueryPlan",
    "QueryResult",
    "RowStream",
    "Session",
    "TableRef",
    # manifest
    "Manifest",
    "SourceConfig",
    "ToolConfig",
    "AuditConfig",
    "WriteMode",
    # policy
    "DenialKind",
    "PolicyDecision",
    "PolicyGate",
    "PolicyVerdict",
    # source
    "QueryBackend",
    "ResolvedSource",
    "SessionProvider",
    # tool sdk
    "BaseTool",
    "ParamValue",
    "ParamValues",
    "ToolContext",
    "ToolDefinition",
    "ToolInput",
    "ToolOutput",
]
