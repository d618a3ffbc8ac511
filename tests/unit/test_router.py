"""Unit tests for the execution router state machine."""

from __future__ import annotations

import asyncio
import time

import pytest

from contracts.errors import BackendError, ConfigError, ParameterError
from contracts.execution import ExecutionRequest, Session
from contracts.manifest import WriteMode
from runtime.execution.router import (
    Execution,
    ExecutionPath,
    ExecutionRouter,
    InvocationState,
)
from runtime.policy import SourcePolicyGate
from runtime.sources.sessions import SessionPool


def _pool() -> SessionPool:
    def create() -> Session:
        now = time.time()
        return Session(session_id="sess-9", dataset_id="_script_9", created_at=now, last_used=now)

    return SessionPool(create, size=1, acquire_timeout=0.1)


class TestPathSelection:
    def test_stateless_without_sessions(self, source) -> None:
        assert ExecutionRouter(source, SourcePolicyGate()).select_path() == ExecutionPath.STATELESS

    def test_session_bound_with_provider(self, make_source, backend) -> None:
        router = ExecutionRouter(make_source(backend, sessions=_pool()), SourcePolicyGate())
        assert router.select_path() == ExecutionPath.SESSION_BOUND

    @pytest.mark.asyncio
    async def test_session_route_holds_session(self, make_source, backend) -> None:
        pool = _pool()
        router = ExecutionRouter(make_source(backend, sessions=pool), SourcePolicyGate())
        async with router.route() as route:
            assert route.session is not None
            assert route.session.session_id == "sess-9"
            assert pool.idle_count == 0
        assert pool.idle_count == 1

    @pytest.mark.asyncio
    async def test_client_credentials_use_creator(self, make_source, make_backend) -> None:
        caller_backend = make_backend()
        tokens: list[str] = []

        def creator(token: str):
            tokens.append(token)
            return caller_backend

        source = make_source(make_backend(), client_auth=True, creator=creator)
        router = ExecutionRouter(source, SourcePolicyGate())
        async with router.route("tok-123") as route:
            assert route.backend is caller_backend
        assert tokens == ["tok-123"]

    @pytest.mark.asyncio
    async def test_sessions_without_interactive_client(self, make_source, backend) -> None:
        router = ExecutionRouter(make_source(backend, sessions=_pool(), interactive=False), SourcePolicyGate())
        with pytest.raises(ConfigError):
            async with router.route():
                pass

    @pytest.mark.asyncio
    async def test_client_credentials_need_token(self, make_source, backend) -> None:
        source = make_source(backend, client_auth=True, creator=lambda t: backend)
        router = ExecutionRouter(source, SourcePolicyGate())
        with pytest.raises(ParameterError):
            async with router.route(None):
                pass


class TestExecute:
    @pytest.mark.asyncio
    async def test_select_reaches_executing(self, source, backend) -> None:
        router = ExecutionRouter(source, SourcePolicyGate())
        request = ExecutionRequest(sql="SELECT 1", job_id="job-1")
        async with router.route() as route:
            execution = await router.execute(route, request)
        assert execution.state == InvocationState.EXECUTING
        assert execution.stream is not None
        assert len(backend.probes) == 1
        assert len(backend.executions) == 1

    @pytest.mark.asyncio
    async def test_dry_run_completes_without_execution(self, source, backend) -> None:
        router = ExecutionRouter(source, SourcePolicyGate())
        async with router.route() as route:
            execution = await router.execute(route, ExecutionRequest(sql="SELECT 1", dry_run=True))
        assert execution.state == InvocationState.COMPLETED
        assert execution.plan == backend.plan
        assert backend.executions == []

    @pytest.mark.asyncio
    async def test_denied_never_executes(self, make_source, make_backend, make_plan) -> None:
        backend = make_backend(plan=make_plan("DELETE", "proj.sales.t"))
        source = make_source(backend, write_mode=WriteMode.BLOCKED)
        router = ExecutionRouter(source, SourcePolicyGate())
        async with router.route() as route:
            execution = await router.execute(route, ExecutionRequest(sql="DELETE FROM t WHERE true"))
        assert execution.state == InvocationState.DENIED
        assert execution.decision is not None and not execution.decision.permitted
        assert backend.executions == []

    @pytest.mark.asyncio
    async def test_engine_rejected_probe_is_unclassified(self, make_source, make_backend) -> None:
        backend = make_backend(probe_error=BackendError("Syntax error", status=400))
        router = ExecutionRouter(make_source(backend), SourcePolicyGate())
        async with router.route() as route:
            execution = await router.execute(route, ExecutionRequest(sql="SELEC 1"))
        assert execution.plan is None
        assert execution.state == InvocationState.DENIED
        assert execution.decision.kind.value == "classification_unavailable"

    @pytest.mark.asyncio
    async def test_transport_probe_failure_propagates(self, make_source, make_backend) -> None:
        backend = make_backend(probe_error=BackendError("connection reset", transport=True))
        router = ExecutionRouter(make_source(backend), SourcePolicyGate())
        with pytest.raises(BackendError):
            async with router.route() as route:
                await router.execute(route, ExecutionRequest(sql="SELECT 1"))
        assert backend.executions == []

    @pytest.mark.asyncio
    async def test_permitted_unplannable_dry_run_fails(self, make_source, make_backend) -> None:
        backend = make_backend(probe_error=BackendError("Syntax error", status=400))
        router = ExecutionRouter(make_source(backend, allow_unclassified=True), SourcePolicyGate())
        with pytest.raises(BackendError, match="could not plan") as info:
            async with router.route() as route:
                await router.execute(route, ExecutionRequest(sql="SELEC 1", dry_run=True))
        assert info.value.status == 400
        assert backend.executions == []

    @pytest.mark.asyncio
    async def test_session_passed_to_backend(self, make_source, backend) -> None:
        router = ExecutionRouter(make_source(backend, sessions=_pool()), SourcePolicyGate())
        async with router.route() as route:
            await router.execute(route, ExecutionRequest(sql="SELECT 1"))
        assert backend.probes[0][1].session_id == "sess-9"
        assert backend.executions[0][1].session_id == "sess-9"

    @pytest.mark.asyncio
    async def test_cancellation_cancels_job(self, source, backend) -> None:
        started = asyncio.Event()
        loop = asyncio.get_running_loop()
        original = backend.execute

        def slow_execute(request, session=None):
            loop.call_soon_threadsafe(started.set)
            time.sleep(0.2)
            return original(request, session)

        backend.execute = slow_execute  # type: ignore[method-assign]
        router = ExecutionRouter(source, SourcePolicyGate())

        async def run() -> None:
            async with router.route() as route:
                await router.execute(route, ExecutionRequest(sql="SELECT 1", job_id="job-x"))

        task = asyncio.create_task(run())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert backend.cancelled == ["job-x"]
        assert len(backend.executions) == 1

    @pytest.mark.asyncio
    async def test_cancelled_probe_never_executes(self, source, backend) -> None:
        started = asyncio.Event()
        loop = asyncio.get_running_loop()
        original = backend.dry_run

        def slow_probe(request, session=None):
            loop.call_soon_threadsafe(started.set)
            time.sleep(0.2)
            return original(request, session)

        backend.dry_run = slow_probe  # type: ignore[method-assign]
        router = ExecutionRouter(source, SourcePolicyGate())

        async def run() -> None:
            async with router.route() as route:
                await router.execute(route, ExecutionRequest(sql="SELECT 1"))

        task = asyncio.create_task(run())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(backend.probes) == 1
        assert backend.executions == []


    @pytest.mark.asyncio
    async def test_cancelled_job_holds_session_until_worker_returns(self, make_source, backend) -> None:
        pool = _pool()
        started = asyncio.Event()
        finished: list[str] = []
        loop = asyncio.get_running_loop()
        original = backend.execute

        def slow_execute(request, session=None):
            loop.call_soon_threadsafe(started.set)
            time.sleep(0.2)
            finished.append(session.session_id)
            return original(request, session)

        backend.execute = slow_execute  # type: ignore[method-assign]
        router = ExecutionRouter(make_source(backend, sessions=pool), SourcePolicyGate())

        async def run() -> None:
            async with router.route() as route:
                await router.execute(route, ExecutionRequest(sql="SELECT 1", job_id="job-s"))

        task = asyncio.create_task(run())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert finished == ["sess-9"]
        assert pool.idle_count == 1
        assert backend.closed is True

class TestExecutionStates:
    def test_invalid_transition(self) -> None:
        execution = Execution(request=ExecutionRequest(sql="SELECT 1"))
        with pytest.raises(RuntimeError):
            execution.advance(InvocationState.EXECUTING)

    def test_failed_from_any_state(self) -> None:
        execution = Execution(request=ExecutionRequest(sql="SELECT 1"))
        execution.advance(InvocationState.CLASSIFYING)
        execution.advance(InvocationState.FAILED)
        assert execution.state == InvocationState.FAILED
