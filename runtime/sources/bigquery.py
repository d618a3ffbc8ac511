"""BigQuery source.

Wraps ``google.cloud.bigquery.Client`` for the interactive, session-aware
path and the REST backend for the stateless path, and carries the
source-level policy settings declared in the manifest.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterator

import httpx
import requests
from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import bigquery

from contracts.errors import BackendError, ConfigError
from contracts.execution import (
    ColumnSchema,
    ExecutionRequest,
    QueryPlan,
    RowStream,
    Session,
    TableRef,
)
from contracts.manifest import SourceConfig, WriteMode
from contracts.source import ClientCreator, QueryBackend, ResolvedSource, SessionProvider
from runtime.policy import split_dataset
from runtime.sources.bigquery_rest import BigQueryRestBackend
from runtime.sources.sessions import SessionPool

logger = logging.getLogger(__name__)

BIGQUERY_SCOPE = "https://www.googleapis.com/auth/bigquery"

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    auth_exceptions.TransportError,
    api_exceptions.RetryError,
    requests.exceptions.RequestException,
    ConnectionError,
    TimeoutError,
)


def backend_error(exc: BaseException) -> BackendError:
    """Translate a client-library exception, keeping the backend detail."""
    if isinstance(exc, api_exceptions.GoogleAPICallError):
        status = exc.code if isinstance(exc.code, int) else None
        reason = getattr(exc, "reason", None) or ""
        return BackendError(
            f"BigQuery error: {exc.message}",
            transport=status is None or status >= 500,
            status=status,
            reason=reason,
        )
    return BackendError(f"BigQuery request failed: {exc}", transport=True)


def _column(field: bigquery.SchemaField) -> ColumnSchema:
    element = getattr(field, "range_element_type", None)
    return ColumnSchema(
        name=field.name,
        field_type=field.field_type,
        mode=field.mode or "NULLABLE",
        fields=[_column(sub) for sub in field.fields],
        range_element_type=getattr(element, "element_type", None),
    )


def _table(ref: Any) -> TableRef:
    return TableRef(project=ref.project, dataset=ref.dataset_id, table=ref.table_id)


# ── interactive client backend ──────────────────────────────────────


class BigQueryClientBackend(QueryBackend):
    """``QueryBackend`` on top of the google-cloud-bigquery client."""

    def __init__(self, client: bigquery.Client, *, location: str | None = None, timeout: float = 60.0) -> None:
        self._client = client
        self._location = location
        self._timeout = timeout

    @property
    def client(self) -> bigquery.Client:
        return self._client

    def _job_config(
        self, request: ExecutionRequest, session: Session | None, *, dry_run: bool
    ) -> bigquery.QueryJobConfig:
        config = bigquery.QueryJobConfig(dry_run=dry_run, use_query_cache=not dry_run)
        if request.default_dataset:
            project, dataset = split_dataset(request.default_dataset, self._client.project)
            config.default_dataset = f"{project}.{dataset}"
        if session is not None:
            config.connection_properties = [
                bigquery.ConnectionProperty("session_id", session.session_id)
            ]
        return config

    def dry_run(self, request: ExecutionRequest, session: Session | None = None) -> QueryPlan:
        try:
            job = self._client.query(
                request.sql,
                job_config=self._job_config(request, session, dry_run=True),
                location=self._location,
            )
        except (api_exceptions.GoogleAPICallError, *_TRANSPORT_ERRORS) as exc:
            raise backend_error(exc) from exc

        statement_type = job.statement_type or ""
        targets = []
        if job.ddl_target_table is not None:
            targets.append(_table(job.ddl_target_table))
        if job.destination is not None and statement_type != "SELECT":
            targets.append(_table(job.destination))
        return QueryPlan(
            statement_type=statement_type,
            referenced_tables=[_table(t) for t in job.referenced_tables or []],
            write_targets=targets,
            total_bytes_processed=job.total_bytes_processed,
        )

    def execute(self, request: ExecutionRequest, session: Session | None = None) -> RowStream:
        page_size = request.max_rows + 1 if request.max_rows else None
        try:
            job = self._client.query(
                request.sql,
                job_config=self._job_config(request, session, dry_run=False),
                job_id=request.job_id or None,
                location=self._location,
            )
            iterator = job.result(page_size=page_size, timeout=self._timeout)
        except (api_exceptions.GoogleAPICallError, *_TRANSPORT_ERRORS) as exc:
            raise backend_error(exc) from exc

        return RowStream(
            columns=[_column(f) for f in iterator.schema or []],
            rows=_iter_values(iterator),
            job_id=job.job_id,
            statement_type=job.statement_type or "",
            affected_rows=job.num_dml_affected_rows,
        )

    def cancel(self, job_id: str) -> None:
        try:
            self._client.cancel_job(job_id, location=self._location)
        except (api_exceptions.GoogleAPICallError, *_TRANSPORT_ERRORS) as exc:
            logger.warning("Cancelling job %s failed: %s", job_id, exc)

    def create_session(self) -> Session:
        """Start a BigQuery session and return its handle."""
        config = bigquery.QueryJobConfig(create_session=True)
        try:
            job = self._client.query("SELECT 1", job_config=config, location=self._location)
            job.result(timeout=self._timeout)
        except (api_exceptions.GoogleAPICallError, *_TRANSPORT_ERRORS) as exc:
            raise backend_error(exc) from exc
        if job.session_info is None:
            raise BackendError("BigQuery did not return session information")
        now = time.time()
        return Session(
            session_id=job.session_info.session_id,
            dataset_id=job.destination.dataset_id if job.destination is not None else "",
            created_at=now,
            last_used=now,
        )


def _iter_values(iterator: Any) -> Iterator[tuple[Any, ...]]:
    try:
        for row in iterator:
            yield tuple(row.values())
    except (api_exceptions.GoogleAPICallError, *_TRANSPORT_ERRORS) as exc:
        raise backend_error(exc) from exc


# ── credentials ─────────────────────────────────────────────────────


class ServiceToken:
    """Thread-safe access-token provider for service credentials."""

    def __init__(self, credentials: Any) -> None:
        self._credentials = credentials
        self._lock = threading.Lock()

    def __call__(self) -> str:
        import google.auth.transport.requests

        with self._lock:
            if not self._credentials.valid:
                try:
                    self._credentials.refresh(google.auth.transport.requests.Request())
                except auth_exceptions.GoogleAuthError as exc:
                    raise BackendError(f"Refreshing credentials failed: {exc}", transport=True) from exc
            return self._credentials.token


def _default_credentials() -> Any:
    import google.auth

    try:
        credentials, _ = google.auth.default(scopes=[BIGQUERY_SCOPE])
    except auth_exceptions.DefaultCredentialsError as exc:
        raise ConfigError(f"No Google credentials available: {exc}") from exc
    return credentials


# ── source ──────────────────────────────────────────────────────────


class BigQuerySource(ResolvedSource):
    """Resolved BigQuery source built from a manifest ``SourceConfig``."""

    kind = "bigquery"

    def __init__(
        self,
        config: SourceConfig,
        *,
        client: bigquery.Client | None = None,
        http: httpx.Client | None = None,
        token: Callable[[], str] | None = None,
    ) -> None:
        if config.use_client_oauth and config.sessions.enabled:
            raise ConfigError(
                "Sessions cannot be combined with useClientOAuth: a session belongs "
                "to the credentials that created it"
            )
        self._config = config
        self._http = http or httpx.Client()
        self._allowed = {
            ".".join(split_dataset(name, config.project)) for name in config.allowed_datasets
        }

        self._client_backend: BigQueryClientBackend | None = None
        self._rest_backend: BigQueryRestBackend | None = None
        self._sessions: SessionPool | None = None

        if not config.use_client_oauth:
            if client is None or token is None:
                credentials = _default_credentials()
                client = client or bigquery.Client(
                    project=config.project, location=config.location, credentials=credentials
                )
                token = token or ServiceToken(credentials)
            self._client_backend = BigQueryClientBackend(
                client, location=config.location, timeout=config.timeout
            )
            self._rest_backend = self._rest(token)
            if config.sessions.enabled:
                self._sessions = SessionPool(
                    self._client_backend.create_session,
                    size=config.sessions.pool_size,
                    acquire_timeout=config.sessions.acquire_timeout,
                )

    @classmethod
    def from_config(cls, config: SourceConfig) -> BigQuerySource:
        return cls(config)

    def _rest(self, token: Callable[[], str]) -> BigQueryRestBackend:
        return BigQueryRestBackend(
            self._http,
            project=self._config.project,
            token=token,
            location=self._config.location,
            timeout=self._config.timeout,
            api_endpoint=self._config.api_endpoint,
        )

    # ── capabilities ─────────────────────────────────────────────────

    @property
    def project(self) -> str:
        return self._config.project

    def query_client(self) -> QueryBackend | None:
        return self._client_backend

    def rest_service(self) -> QueryBackend | None:
        return self._rest_backend

    def client_creator(self) -> ClientCreator | None:
        if not self._config.use_client_oauth:
            return None

        def create(access_token: str) -> QueryBackend:
            return self._rest(lambda: access_token)

        return create

    def session_provider(self) -> SessionProvider | None:
        return self._sessions

    def write_mode(self) -> WriteMode:
        return self._config.write_mode

    def allowed_datasets(self) -> list[str]:
        return sorted(self._allowed)

    def is_dataset_allowed(self, project: str, dataset: str) -> bool:
        if not self._allowed:
            return True
        return f"{project}.{dataset}" in self._allowed

    def use_client_authorization(self) -> bool:
        return self._config.use_client_oauth

    def max_query_result_rows(self) -> int:
        return self._config.max_query_result_rows

    def allows_unclassified(self) -> bool:
        return self._config.allow_unclassified
