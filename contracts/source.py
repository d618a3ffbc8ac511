"""Source capability contracts.

A tool never sees a concrete database client.  It talks to a
``ResolvedSource`` through a fixed capability set: an interactive client
backend, a stateless REST backend, an optional session provider, and the
policy settings the source was declared with.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Callable

from contracts.execution import ExecutionRequest, QueryPlan, RowStream, Session
from contracts.manifest import WriteMode


class QueryBackend(ABC):
    """One invocation path to the engine.  All methods block."""

    @abstractmethod
    def dry_run(self, request: ExecutionRequest, session: Session | None = None) -> QueryPlan:
        """Plan the statement without running it.

        Raises ``BackendError``; ``transport=False`` means the engine itself
        rejected the statement.
        """
        ...

    @abstractmethod
    def execute(self, request: ExecutionRequest, session: Session | None = None) -> RowStream:
        """Run the statement to completion and return its rows lazily."""
        ...

    @abstractmethod
    def cancel(self, job_id: str) -> None:
        """Best-effort cancellation of an in-flight job."""
        ...


class SessionProvider(ABC):
    """Hands out backend sessions, one invocation at a time."""

    @abstractmethod
    def acquire(self) -> AbstractAsyncContextManager[Session]:
        """Exclusively hold a session for the duration of the ``async with``.

        Raises ``SessionBusyError`` when none frees up in time.
        """
        ...


# Builds a stateless REST backend that authenticates as the caller.
ClientCreator = Callable[[str], QueryBackend]


class ResolvedSource(ABC):
    """Capability handle a tool obtains from the source registry."""

    kind: str = ""

    @property
    @abstractmethod
    def project(self) -> str:
        ...

    @abstractmethod
    def query_client(self) -> QueryBackend | None:
        """Interactive, session-aware client using service credentials."""
        ...

    @abstractmethod
    def rest_service(self) -> QueryBackend | None:
        """Stateless REST backend using service credentials."""
        ...

    @abstractmethod
    def client_creator(self) -> ClientCreator | None:
        ...

    @abstractmethod
    def session_provider(self) -> SessionProvider | None:
        ...

    @abstractmethod
    def write_mode(self) -> WriteMode:
        ...

    @abstractmethod
    def allowed_datasets(self) -> list[str]:
        ...

    @abstractmethod
    def is_dataset_allowed(self, project: str, dataset: str) -> bool:
        ...

    @abstractmethod
    def use_client_authorization(self) -> bool:
        ...

    def max_query_result_rows(self) -> int:
        return 0

    def allows_unclassified(self) -> bool:
        return False
