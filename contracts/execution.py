"""Execution contracts — requests, plans, row streams, and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Sequence

from pydantic import BaseModel, computed_field, model_validator

# Statement types the engine reports for side-effect-free statements.
READ_STATEMENT_TYPES = frozenset({"SELECT"})

# Dataset alias BigQuery resolves to the current session's anonymous dataset.
SESSION_DATASET_ALIAS = "_SESSION"


# ── Schema ───────────────────────────────────────────────────────────


class ColumnSchema(BaseModel):
    """Backend-neutral description of one result column."""

    name: str
    field_type: str
    mode: str = "NULLABLE"
    fields: list[ColumnSchema] = []
    range_element_type: str | None = None

    @property
    def repeated(self) -> bool:
        return self.mode.upper() == "REPEATED"


class TableRef(BaseModel):
    project: str
    dataset: str
    table: str

    @property
    def dataset_path(self) -> str:
        return f"{self.project}.{self.dataset}"

    def __str__(self) -> str:
        return f"{self.project}.{self.dataset}.{self.table}"


# ── Plan probe ───────────────────────────────────────────────────────


class QueryPlan(BaseModel):
    """What the engine's dry run reports about a statement."""

    statement_type: str
    referenced_tables: list[TableRef] = []
    write_targets: list[TableRef] = []
    total_bytes_processed: int | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_write(self) -> bool:
        return self.statement_type.upper() not in READ_STATEMENT_TYPES


# ── Per-invocation request ──────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionRequest:
    sql: str
    dry_run: bool = False
    max_rows: int = 0
    default_dataset: str | None = None
    job_id: str = ""


def effective_row_cap(*caps: int) -> int:
    """Return the smallest positive cap, or 0 (unlimited) when none is set."""
    positive = [c for c in caps if c > 0]
    return min(positive) if positive else 0


# ── Sessions ─────────────────────────────────────────────────────────


@dataclass
class Session:
    """A stateful backend session handed to one invocation at a time."""

    session_id: str
    dataset_id: str
    created_at: float
    last_used: float

    def owns_dataset(self, dataset: str) -> bool:
        return dataset in (self.dataset_id, SESSION_DATASET_ALIAS)


# ── Row streams ──────────────────────────────────────────────────────


@dataclass
class RowStream:
    """Lazily fetched rows of a finished query, values in column order.

    Iterating may block on page fetches; consume it off the event loop.
    """

    columns: list[ColumnSchema]
    rows: Iterable[Sequence[Any]]
    job_id: str = ""
    statement_type: str = ""
    affected_rows: int | None = None
    on_close: Callable[[], None] | None = field(default=None, repr=False)

    def __iter__(self) -> Iterator[Sequence[Any]]:
        return iter(self.rows)

    def close(self) -> None:
        close_rows = getattr(self.rows, "close", None)
        if callable(close_rows):
            close_rows()
        if self.on_close is not None:
            self.on_close()
            self.on_close = None


# ── Results ──────────────────────────────────────────────────────────


class QueryResult(BaseModel):
    """Terminal invocation result: normalized rows or a dry-run plan."""

    rows: list[dict[str, Any]] | None = None
    columns: list[str] = []
    row_count: int = 0
    truncated: bool = False
    affected_rows: int | None = None
    job_id: str = ""
    plan: QueryPlan | None = None

    @model_validator(mode="after")
    def _rows_or_plan(self) -> QueryResult:
        if (self.rows is None) == (self.plan is None):
            raise ValueError("QueryResult carries either rows or a plan")
        return self

    @property
    def is_dry_run(self) -> bool:
        return self.plan is not None
