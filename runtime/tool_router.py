"""Tool router — audit-logged front door for every tool invocation.

Each transport (HTTP, MCP, CLI) hands a ``ToolInput`` to ``ToolRouter.run``.
Typed ``ToolError`` exceptions are turned into a failed ``ToolOutput`` here
and nowhere else; anything else propagates.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable

from pydantic import BaseModel

from contracts.audit import AuditEntry, AuditEvent, AuditLogger
from contracts.errors import PolicyDenied, ToolError, UnauthorizedError
from contracts.execution import QueryResult
from contracts.tool_sdk import ToolContext, ToolInput, ToolOutput
from runtime.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

UNKNOWN_TOOL = "unknown_tool"


def result_payload(result: Any) -> Any:
    """JSON-ready form of a tool result; unset top-level fields are dropped."""
    if isinstance(result, BaseModel):
        data = result.model_dump(mode="json")
        return {k: v for k, v in data.items() if v is not None}
    return result


class ToolRouter:
    """Runs one tool call with auth checks, audit logging and error mapping."""

    def __init__(
        self,
        registry: ToolRegistry,
        audit: AuditLogger,
        app_name: str = "",
        redact_sql: bool = False,
    ) -> None:
        self._registry = registry
        self._audit = audit
        self._app_name = app_name
        self._redact_sql = redact_sql

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def run(
        self,
        tool_input: ToolInput,
        *,
        transport: str = "",
        access_token: str | None = None,
        verified_auth_services: Iterable[str] = (),
        timeout: float | None = None,
        request_id: str | None = None,
    ) -> ToolOutput:
        request_id = request_id or str(uuid.uuid4())
        name = tool_input.tool_name
        verified = list(verified_auth_services)

        def audit(event: AuditEvent, detail: dict[str, Any]) -> None:
            self._audit.log(
                AuditEntry(
                    request_id=request_id,
                    event=event,
                    app=self._app_name,
                    tool=name,
                    transport=transport,
                    detail={"call_id": tool_input.call_id, **detail},
                )
            )

        if name not in self._registry:
            audit(AuditEvent.TOOL_ERROR, {"kind": UNKNOWN_TOOL})
            return ToolOutput(
                call_id=tool_input.call_id,
                tool_name=name,
                error=f"Unknown tool: {name}",
                error_kind=UNKNOWN_TOOL,
                success=False,
            )
        tool = self._registry.get(name)

        audit(AuditEvent.TOOL_CALL, {"arguments": self._loggable(tool_input.arguments)})

        ctx = ToolContext(
            request_id=request_id,
            app_name=self._app_name,
            access_token=access_token,
            verified_auth_services=verified,
            timeout=timeout,
        )
        try:
            if not tool.authorized(verified):
                raise UnauthorizedError(
                    f"Tool '{name}' requires one of: {', '.join(tool.definition().auth_required)}"
                )
            result = await tool.invoke(tool_input.arguments, ctx)
        except PolicyDenied as exc:
            logger.info("Tool %s blocked by %s: %s", name, exc.decision.rule, exc.decision.reason)
            audit(AuditEvent.POLICY_BLOCK, {"reason": exc.decision.reason, **exc.detail()})
            return self._failure(tool_input, exc)
        except ToolError as exc:
            logger.warning("Tool %s failed (%s): %s", name, exc.kind, exc)
            audit(AuditEvent.TOOL_ERROR, {"kind": exc.kind, "error": str(exc), **exc.detail()})
            return self._failure(tool_input, exc)

        audit(AuditEvent.TOOL_RESULT, self._summary(result))
        return ToolOutput(
            call_id=tool_input.call_id,
            tool_name=name,
            result=result_payload(result),
        )

    # ── internal ────────────────────────────────────────────────────

    def _loggable(self, arguments: dict[str, Any]) -> dict[str, Any]:
        if self._redact_sql and "sql" in arguments:
            return {**arguments, "sql": "[redacted]"}
        return dict(arguments)

    @staticmethod
    def _summary(result: Any) -> dict[str, Any]:
        if not isinstance(result, QueryResult):
            return {}
        plan = result.plan
        if plan is not None:
            return {
                "dry_run": True,
                "statement_type": plan.statement_type,
                "total_bytes_processed": plan.total_bytes_processed,
            }
        return {
            "job_id": result.job_id,
            "row_count": result.row_count,
            "truncated": result.truncated,
            "affected_rows": result.affected_rows,
        }

    @staticmethod
    def _failure(tool_input: ToolInput, exc: ToolError) -> ToolOutput:
        return ToolOutput(
            call_id=tool_input.call_id,
            tool_name=tool_input.tool_name,
            error=str(exc),
            error_kind=exc.kind,
            error_detail=exc.detail(),
            retryable=exc.retryable,
            success=False,
        )
