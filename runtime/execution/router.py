"""Execution router — pick an invocation path, probe, authorize, execute.

Per invocation::

    received -> classifying -> authorized -> executing -> completed
                            \\-> denied
    (any state) -> failed

The path (stateless REST or session-bound client) is chosen once, before
the probe, and is not renegotiated.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Sequence, TypeVar

from contracts.errors import BackendError, ConfigError, ParameterError
from contracts.execution import ExecutionRequest, QueryPlan, RowStream, Session
from contracts.policy import PolicyDecision, PolicyGate
from contracts.source import QueryBackend, ResolvedSource
from runtime.execution.limiter import bound_stream

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExecutionPath(str, Enum):
    STATELESS = "stateless"
    SESSION_BOUND = "session_bound"


class InvocationState(str, Enum):
    RECEIVED = "received"
    CLASSIFYING = "classifying"
    AUTHORIZED = "authorized"
    EXECUTING = "executing"
    COMPLETED = "completed"
    DENIED = "denied"
    FAILED = "failed"


_TRANSITIONS: dict[InvocationState, frozenset[InvocationState]] = {
    InvocationState.RECEIVED: frozenset({InvocationState.CLASSIFYING}),
    InvocationState.CLASSIFYING: frozenset({InvocationState.AUTHORIZED, InvocationState.DENIED}),
    InvocationState.AUTHORIZED: frozenset({InvocationState.EXECUTING, InvocationState.COMPLETED}),
    InvocationState.EXECUTING: frozenset({InvocationState.COMPLETED}),
    InvocationState.COMPLETED: frozenset(),
    InvocationState.DENIED: frozenset(),
    InvocationState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class ExecutionRoute:
    """The backend (and session, if any) one invocation runs on."""

    path: ExecutionPath
    backend: QueryBackend
    session: Session | None = None


@dataclass
class Execution:
    """Progress of one invocation through the router."""

    request: ExecutionRequest
    state: InvocationState = InvocationState.RECEIVED
    plan: QueryPlan | None = None
    decision: PolicyDecision | None = None
    probe_error: BackendError | None = None
    stream: RowStream | None = field(default=None, repr=False)

    def advance(self, state: InvocationState) -> None:
        if state != InvocationState.FAILED and state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid invocation transition {self.state.value} -> {state.value}")
        logger.debug("job %s: %s -> %s", self.request.job_id, self.state.value, state.value)
        self.state = state


class ExecutionRouter:
    """Routes requests for one source through probe, gate, and execution.

    Every blocking backend call runs on a worker thread.  When the awaiting
    task is cancelled, the job is cancelled and the worker is waited out
    before the route (and with it the session) is given up.
    """

    def __init__(self, source: ResolvedSource, gate: PolicyGate) -> None:
        self._source = source
        self._gate = gate

    def select_path(self) -> ExecutionPath:
        if self._source.session_provider() is not None:
            return ExecutionPath.SESSION_BOUND
        return ExecutionPath.STATELESS

    @asynccontextmanager
    async def route(self, access_token: str | None = None) -> AsyncIterator[ExecutionRoute]:
        """Hold the route for one invocation; a session is released on exit."""
        path = self.select_path()
        if path == ExecutionPath.SESSION_BOUND:
            provider = self._source.session_provider()
            client = self._source.query_client()
            if provider is None or client is None:
                raise ConfigError("Session-bound execution needs a session provider and an interactive client")
            async with provider.acquire() as session:
                yield ExecutionRoute(path=path, backend=client, session=session)
            return

        yield ExecutionRoute(path=path, backend=self._stateless_backend(access_token))

    def _stateless_backend(self, access_token: str | None) -> QueryBackend:
        if self._source.use_client_authorization():
            creator = self._source.client_creator()
            if not access_token or creator is None:
                raise ParameterError("This tool requires the caller's access token")
            return creator(access_token)
        rest = self._source.rest_service()
        if rest is None:
            raise ConfigError("Source has no REST service for stateless execution")
        return rest

    async def execute(self, route: ExecutionRoute, request: ExecutionRequest) -> Execution:
        """Run the state machine up to an open row stream, a plan, or a denial."""
        execution = Execution(request=request)
        try:
            execution.advance(InvocationState.CLASSIFYING)
            await self._classify(route, execution)

            execution.decision = self._gate.authorize(
                self._source, request, execution.plan, route.session
            )
            if not execution.decision.permitted:
                execution.advance(InvocationState.DENIED)
                return execution
            execution.advance(InvocationState.AUTHORIZED)

            if request.dry_run:
                if execution.probe_error is not None:
                    # A permitted but unplannable statement has no plan to return.
                    err = execution.probe_error
                    raise BackendError(
                        f"The engine could not plan this statement: {err}",
                        status=err.status,
                        reason=err.reason,
                    ) from err
                execution.advance(InvocationState.COMPLETED)
                return execution

            execution.advance(InvocationState.EXECUTING)
            execution.stream = await self._call(
                route, request, route.backend.execute, request, route.session, cancel_job=True
            )
            return execution
        except BaseException:
            execution.advance(InvocationState.FAILED)
            raise

    async def fetch(
        self, route: ExecutionRoute, execution: Execution
    ) -> tuple[RowStream, list[Sequence[Any]], bool]:
        """Read the capped rows of an executing invocation off its open stream."""
        stream = execution.stream
        if stream is None:
            raise RuntimeError(f"job {execution.request.job_id} has no open row stream")
        rows, truncated = await self._call(
            route, execution.request, bound_stream, stream, execution.request.max_rows
        )
        return stream, rows, truncated

    async def _classify(self, route: ExecutionRoute, execution: Execution) -> None:
        """Dry-run the statement.  An engine rejection leaves ``plan`` unset."""
        request = execution.request
        try:
            execution.plan = await self._call(route, request, route.backend.dry_run, request, route.session)
        except BackendError as exc:
            if exc.transport:
                raise
            logger.info("Plan probe rejected by engine: %s", exc)
            execution.probe_error = exc

    # ── worker threads ───────────────────────────────────────────────

    async def _call(
        self,
        route: ExecutionRoute,
        request: ExecutionRequest,
        fn: Callable[..., T],
        *args: Any,
        cancel_job: bool = False,
    ) -> T:
        worker = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            settling = asyncio.ensure_future(self._settle(route, request, worker, cancel_job))
            while not settling.done():
                try:
                    await asyncio.shield(settling)
                except asyncio.CancelledError:
                    continue
            raise

    async def _settle(
        self,
        route: ExecutionRoute,
        request: ExecutionRequest,
        worker: asyncio.Future[Any],
        cancel_job: bool,
    ) -> None:
        """Cancel the job, then wait for its worker; the session is busy until it returns."""
        if cancel_job and request.job_id:
            await asyncio.to_thread(route.backend.cancel, request.job_id)
        await asyncio.wait([worker])
        if worker.cancelled():
            return
        exc = worker.exception()
        if exc is not None:
            logger.info("Job %s ended after cancellation: %s", request.job_id, exc)
        elif isinstance(worker.result(), RowStream):
            worker.result().close()
