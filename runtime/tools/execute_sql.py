"""Built-in execute-sql tool — policy-gated SQL against a BigQuery source."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Mapping

from contracts.errors import BackendError, ConfigError, ParameterError, PolicyDenied
from contracts.execution import ExecutionRequest, QueryResult, effective_row_cap
from contracts.manifest import ToolConfig
from contracts.policy import PolicyGate
from contracts.source import ResolvedSource
from contracts.tool_sdk import BaseTool, ParamValues, ToolContext, ToolDefinition
from runtime.execution.normalizer import normalize_rows
from runtime.execution.router import ExecutionRouter, InvocationState
from runtime.policy import SourcePolicyGate
from runtime.tools.base import bind_params

KIND = "execute-sql"

_DEFAULT_DESCRIPTION = "Execute a SQL statement against BigQuery and return the result rows."


class ExecuteSqlTool(BaseTool):
    """Run an arbitrary SQL statement under the source's safety policies."""

    def __init__(self, config: ToolConfig, gate: PolicyGate | None = None) -> None:
        self._config = config
        self._gate = gate or SourcePolicyGate()
        self._source: ResolvedSource | None = None
        self._router: ExecutionRouter | None = None

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> ToolConfig:
        return self._config

    @property
    def source(self) -> ResolvedSource | None:
        return self._source

    @property
    def max_query_result_rows(self) -> int:
        """Effective row cap: the tighter of the tool's and the source's caps."""
        source_cap = self._source.max_query_result_rows() if self._source else 0
        return effective_row_cap(self._config.max_query_result_rows, source_cap)

    # ── initialization ───────────────────────────────────────────────

    def initialize(self, sources: Mapping[str, ResolvedSource]) -> None:
        name, ref = self._config.name, self._config.source
        source = sources.get(ref)
        if source is None:
            raise ConfigError(f"Tool '{name}' references unknown source '{ref}'")
        if not isinstance(source, ResolvedSource):
            raise ConfigError(
                f"Source '{ref}' of kind '{getattr(source, 'kind', '?')}' is not "
                f"compatible with tool kind '{KIND}'"
            )
        if source.use_client_authorization():
            if source.client_creator() is None:
                raise ConfigError(f"Source '{ref}' requires caller credentials but cannot create clients")
        elif source.rest_service() is None:
            raise ConfigError(f"Source '{ref}' has no REST service, which tool '{name}' requires")
        if source.session_provider() is not None and source.query_client() is None:
            raise ConfigError(f"Source '{ref}' offers sessions but no interactive client")

        self._source = source
        self._router = ExecutionRouter(source, self._gate)

    # ── SDK surface ──────────────────────────────────────────────────

    def definition(self) -> ToolDefinition:
        description = self._config.description or _DEFAULT_DESCRIPTION
        allowed = self._source.allowed_datasets() if self._source else []
        dataset_help = "Dataset used to resolve unqualified table names, as 'project.dataset' or 'dataset'."
        if allowed:
            note = ", ".join(allowed)
            description += f" Queries may only access these datasets: {note}."
            dataset_help += f" Must be one of: {note}."
        return ToolDefinition(
            name=self._config.name,
            description=description,
            input_schema={
                "type": "object",
                "properties": {
                    "sql": {
                        "type": "string",
                        "minLength": 1,
                        "pattern": r"\S",
                        "description": "The SQL statement to execute.",
                    },
                    "dry_run": {
                        "type": "boolean",
                        "default": False,
                        "description": "Plan the statement without running it and return the plan.",
                    },
                    "default_dataset": {
                        "type": "string",
                        "minLength": 1,
                        "description": dataset_help,
                    },
                },
                "required": ["sql"],
                "additionalProperties": False,
            },
            auth_required=list(self._config.auth_required),
        )

    def requires_client_authorization(self) -> bool:
        return self._source.use_client_authorization() if self._source else False

    def bind(self, params: ParamValues | Mapping[str, Any]) -> ExecutionRequest:
        """Resolve invocation parameters into an ``ExecutionRequest``."""
        args = bind_params(self, params)
        return ExecutionRequest(
            sql=args["sql"],
            dry_run=args["dry_run"],
            max_rows=self.max_query_result_rows,
            default_dataset=args.get("default_dataset"),
            job_id=f"sqlgate_{uuid.uuid4().hex}",
        )

    # ── invocation ───────────────────────────────────────────────────

    async def invoke(self, params: ParamValues | Mapping[str, Any], ctx: ToolContext) -> QueryResult:
        router = self._router
        if router is None:
            raise ConfigError(f"Tool '{self._config.name}' has not been initialized")
        request = self.bind(params)
        if self.requires_client_authorization() and not ctx.access_token:
            raise ParameterError(f"Tool '{self._config.name}' requires the caller's access token")

        if ctx.timeout is None:
            return await self._invoke(router, request, ctx)
        try:
            return await asyncio.wait_for(self._invoke(router, request, ctx), timeout=ctx.timeout)
        except asyncio.TimeoutError:
            raise BackendError(
                f"Invocation exceeded {ctx.timeout:g}s timeout", transport=True
            ) from None

    async def _invoke(
        self, router: ExecutionRouter, request: ExecutionRequest, ctx: ToolContext
    ) -> QueryResult:
        async with router.route(ctx.access_token) as route:
            execution = await router.execute(route, request)
            decision = execution.decision
            if decision is not None and not decision.permitted:
                raise PolicyDenied(decision)
            if request.dry_run:
                return QueryResult(plan=execution.plan)

            try:
                stream, rows, truncated = await router.fetch(route, execution)
                normalized = normalize_rows(stream.columns, rows)
            except BaseException:
                execution.advance(InvocationState.FAILED)
                raise
            execution.advance(InvocationState.COMPLETED)

        return QueryResult(
            rows=normalized,
            columns=[c.name for c in stream.columns],
            row_count=len(normalized),
            truncated=truncated,
            affected_rows=stream.affected_rows,
            job_id=stream.job_id,
        )
