"""Shared in-memory doubles for sources and query backends."""

from __future__ import annotations

from typing import Any, Callable, Sequence

import pytest

from contracts.errors import BackendError
from contracts.execution import (
    ColumnSchema,
    ExecutionRequest,
    QueryPlan,
    RowStream,
    Session,
    TableRef,
)
from contracts.manifest import WriteMode
from contracts.source import ClientCreator, QueryBackend, ResolvedSource, SessionProvider
from runtime.policy import split_dataset

INT_COLUMN = [ColumnSchema(name="n", field_type="INTEGER")]
THREE_ROWS = [(1,), (2,), (3,)]


def table_ref(name: str) -> TableRef:
    project, dataset, table = name.split(".")
    return TableRef(project=project, dataset=dataset, table=table)


def build_plan(statement_type: str = "SELECT", *tables: str, targets: Sequence[str] = ()) -> QueryPlan:
    """A plan over ``project.dataset.table`` names."""
    return QueryPlan(
        statement_type=statement_type,
        referenced_tables=[table_ref(t) for t in tables],
        write_targets=[table_ref(t) for t in targets],
    )


class FakeBackend(QueryBackend):
    """Records every call; serves a fixed plan and a fixed set of rows."""

    def __init__(
        self,
        *,
        plan: QueryPlan | None = None,
        columns: Sequence[ColumnSchema] = INT_COLUMN,
        rows: Sequence[Sequence[Any]] = THREE_ROWS,
        probe_error: BackendError | None = None,
        execute_error: BaseException | None = None,
        affected_rows: int | None = None,
    ) -> None:
        self.plan = plan or build_plan()
        self.columns = list(columns)
        self.rows = list(rows)
        self.probe_error = probe_error
        self.execute_error = execute_error
        self.affected_rows = affected_rows
        self.probes: list[tuple[ExecutionRequest, Session | None]] = []
        self.executions: list[tuple[ExecutionRequest, Session | None]] = []
        self.cancelled: list[str] = []
        self.fetched = 0
        self.closed = False

    def dry_run(self, request: ExecutionRequest, session: Session | None = None) -> QueryPlan:
        self.probes.append((request, session))
        if self.probe_error is not None:
            raise self.probe_error
        return self.plan

    def execute(self, request: ExecutionRequest, session: Session | None = None) -> RowStream:
        self.executions.append((request, session))
        if self.execute_error is not None:
            raise self.execute_error

        def generate():
            for row in self.rows:
                self.fetched += 1
                yield tuple(row)

        def mark_closed() -> None:
            self.closed = True

        return RowStream(
            columns=self.columns,
            rows=generate(),
            job_id=request.job_id,
            statement_type=self.plan.statement_type,
            affected_rows=self.affected_rows,
            on_close=mark_closed,
        )

    def cancel(self, job_id: str) -> None:
        self.cancelled.append(job_id)


class FakeSource(ResolvedSource):
    """``ResolvedSource`` over a ``FakeBackend`` with configurable policy settings."""

    kind = "fake"

    def __init__(
        self,
        backend: FakeBackend,
        *,
        project: str = "proj",
        write_mode: WriteMode = WriteMode.ALLOWED,
        allowed_datasets: Sequence[str] = (),
        max_rows: int = 0,
        sessions: SessionProvider | None = None,
        client_auth: bool = False,
        creator: ClientCreator | None = None,
        allow_unclassified: bool = False,
        rest: bool = True,
        interactive: bool = True,
    ) -> None:
        self.backend = backend
        self._project = project
        self._write_mode = write_mode
        self._allowed = {".".join(split_dataset(d, project)) for d in allowed_datasets}
        self._max_rows = max_rows
        self._sessions = sessions
        self._client_auth = client_auth
        self._creator = creator
        self._allow_unclassified = allow_unclassified
        self._rest = rest
        self._interactive = interactive

    @property
    def project(self) -> str:
        return self._project

    def query_client(self) -> QueryBackend | None:
        return self.backend if self._interactive else None

    def rest_service(self) -> QueryBackend | None:
        return self.backend if self._rest and not self._client_auth else None

    def client_creator(self) -> ClientCreator | None:
        return self._creator

    def session_provider(self) -> SessionProvider | None:
        return self._sessions

    def write_mode(self) -> WriteMode:
        return self._write_mode

    def allowed_datasets(self) -> list[str]:
        return sorted(self._allowed)

    def is_dataset_allowed(self, project: str, dataset: str) -> bool:
        return not self._allowed or f"{project}.{dataset}" in self._allowed

    def use_client_authorization(self) -> bool:
        return self._client_auth

    def max_query_result_rows(self) -> int:
        return self._max_rows

    def allows_unclassified(self) -> bool:
        return self._allow_unclassified


# ── fixtures ─────────────────────────────────────────────────────────


@pytest.fixture()
def make_backend() -> Callable[..., FakeBackend]:
    return FakeBackend


@pytest.fixture()
def make_source() -> Callable[..., FakeSource]:
    return FakeSource


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def source(backend: FakeBackend) -> FakeSource:
    return FakeSource(backend)


@pytest.fixture()
def make_plan() -> Callable[..., QueryPlan]:
    """Build a plan from a statement type and dotted table names."""
    return build_plan


@pytest.fixture()
def session() -> Session:
    return Session(session_id="sess-1", dataset_id="_script_abc", created_at=0.0, last_used=0.0)


@pytest.fixture()
def make_tool() -> Callable[..., Any]:
    """Build an initialized execute-sql tool bound to *source*."""
    from contracts.manifest import ToolConfig
    from runtime.tools.execute_sql import ExecuteSqlTool

    def build(source: ResolvedSource, name: str = "run_sql", **config: Any) -> ExecuteSqlTool:
        tool = ExecuteSqlTool(ToolConfig(name=name, source="bq", **config))
        tool.initialize({"bq": source})
        return tool

    return build
