"""Stateless BigQuery backend over the v2 REST API.

Uses ``jobs.insert`` for dry runs and real execution and pages through
``jobs.getQueryResults`` lazily, so a row cap stops page fetches early.
"""

from __future__ import annotations

import base64
import datetime as dt
import json
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Iterator

import httpx

from contracts.errors import BackendError
from contracts.execution import (
    ColumnSchema,
    ExecutionRequest,
    QueryPlan,
    RowStream,
    Session,
    TableRef,
)
from contracts.source import QueryBackend
from runtime.policy import split_dataset

logger = logging.getLogger(__name__)

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)
_POLL_TIMEOUT_MS = 10_000
_MAX_PAGE_SIZE = 10_000


# ── response helpers ────────────────────────────────────────────────


def column_from_json(field: dict[str, Any]) -> ColumnSchema:
    range_type = (field.get("rangeElementType") or {}).get("type")
    return ColumnSchema(
        name=field["name"],
        field_type=field.get("type", ""),
        mode=field.get("mode") or "NULLABLE",
        fields=[column_from_json(sub) for sub in field.get("fields", [])],
        range_element_type=range_type,
    )


def _table_from_json(ref: dict[str, Any]) -> TableRef:
    return TableRef(project=ref["projectId"], dataset=ref["datasetId"], table=ref["tableId"])


def plan_from_job(job: dict[str, Any]) -> QueryPlan:
    """Build a ``QueryPlan`` from a dry-run job resource."""
    stats = job.get("statistics", {})
    query_stats = stats.get("query", {})
    statement_type = query_stats.get("statementType", "")

    targets: list[TableRef] = []
    for key in ("ddlTargetTable", "ddlDestinationTable"):
        if query_stats.get(key):
            targets.append(_table_from_json(query_stats[key]))
    destination = job.get("configuration", {}).get("query", {}).get("destinationTable")
    if destination and statement_type != "SELECT":
        targets.append(_table_from_json(destination))

    total = query_stats.get("totalBytesProcessed", stats.get("totalBytesProcessed"))
    return QueryPlan(
        statement_type=statement_type,
        referenced_tables=[_table_from_json(t) for t in query_stats.get("referencedTables", [])],
        write_targets=targets,
        total_bytes_processed=int(total) if total is not None else None,
    )


def _parse_range_bound(text: str, element_type: str) -> Any:
    text = text.strip()
    if text.upper() in ("UNBOUNDED", "NULL"):
        return None
    if element_type.upper() == "TIMESTAMP" and not text.lstrip("-").isdigit():
        # range bounds are rendered as text, not int64 micros
        return dt.datetime.fromisoformat(text.replace(" UTC", "+00:00").replace(" ", "T"))
    return decode_scalar(element_type, text)


def decode_scalar(field_type: str, value: str) -> Any:
    """Decode one REST cell value into the client library's native type."""
    field_type = field_type.upper()
    if field_type in ("INTEGER", "INT64"):
        return int(value)
    if field_type in ("FLOAT", "FLOAT64"):
        return float(value)
    if field_type in ("NUMERIC", "BIGNUMERIC"):
        return Decimal(value)
    if field_type in ("BOOLEAN", "BOOL"):
        return value.lower() == "true"
    if field_type == "TIMESTAMP":
        # requested with formatOptions.useInt64Timestamp
        return _EPOCH + dt.timedelta(microseconds=int(value))
    if field_type == "DATETIME":
        return dt.datetime.fromisoformat(value.replace(" ", "T"))
    if field_type == "DATE":
        return dt.date.fromisoformat(value)
    if field_type == "TIME":
        return dt.time.fromisoformat(value)
    if field_type == "BYTES":
        return base64.b64decode(value)
    if field_type == "JSON":
        return json.loads(value)
    return value


def decode_cell(column: ColumnSchema, cell: Any) -> Any:
    value = cell.get("v") if isinstance(cell, dict) else cell
    if value is None:
        return None
    if column.repeated:
        element = column.model_copy(update={"mode": "NULLABLE"})
        return [decode_cell(element, item) for item in value]
    field_type = column.field_type.upper()
    if field_type in ("RECORD", "STRUCT"):
        return {
            sub.name: decode_cell(sub, sub_cell)
            for sub, sub_cell in zip(column.fields, value.get("f", []))
        }
    if field_type == "RANGE":
        start, _, end = value.strip("[)").partition(",")
        element_type = column.range_element_type or ""
        return {
            "start": _parse_range_bound(start, element_type),
            "end": _parse_range_bound(end, element_type),
        }
    return decode_scalar(field_type, value)


def decode_row(columns: list[ColumnSchema], row: dict[str, Any]) -> tuple[Any, ...]:
    return tuple(decode_cell(col, cell) for col, cell in zip(columns, row.get("f", [])))


def _error_from_response(resp: httpx.Response) -> BackendError:
    message = resp.text
    reason = ""
    try:
        error = resp.json().get("error", {})
        message = error.get("message", message)
        errors = error.get("errors") or [{}]
        reason = errors[0].get("reason", "")
    except (ValueError, AttributeError):
        pass
    return BackendError(
        f"BigQuery API error ({resp.status_code}): {message}",
        transport=resp.status_code >= 500,
        status=resp.status_code,
        reason=reason,
    )


# ── backend ─────────────────────────────────────────────────────────


class BigQueryRestBackend(QueryBackend):
    """``QueryBackend`` that speaks the BigQuery v2 REST API via httpx."""

    def __init__(
        self,
        http: httpx.Client,
        *,
        project: str,
        token: Callable[[], str],
        location: str | None = None,
        timeout: float = 60.0,
        api_endpoint: str = "https://bigquery.googleapis.com",
    ) -> None:
        self._http = http
        self._project = project
        self._token = token
        self._location = location
        self._timeout = timeout
        self._base = f"{api_endpoint.rstrip('/')}/bigquery/v2/projects/{project}"

    # ── plumbing ─────────────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token()}"}
        try:
            resp = self._http.request(
                method, f"{self._base}{path}", headers=headers, timeout=self._timeout, **kwargs
            )
        except httpx.HTTPError as exc:
            raise BackendError(f"BigQuery request failed: {exc}", transport=True) from exc
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        return resp.json() if resp.content else {}

    def _job_body(
        self, request: ExecutionRequest, session: Session | None, *, dry_run: bool
    ) -> dict[str, Any]:
        query: dict[str, Any] = {"query": request.sql, "useLegacySql": False}
        if request.default_dataset:
            project, dataset = split_dataset(request.default_dataset, self._project)
            query["defaultDataset"] = {"projectId": project, "datasetId": dataset}
        if session is not None:
            query["connectionProperties"] = [{"key": "session_id", "value": session.session_id}]
        reference: dict[str, Any] = {"projectId": self._project}
        if self._location:
            reference["location"] = self._location
        if request.job_id and not dry_run:
            reference["jobId"] = request.job_id
        configuration: dict[str, Any] = {"query": query}
        if dry_run:
            configuration["dryRun"] = True
            query["useQueryCache"] = False
        return {"jobReference": reference, "configuration": configuration}

    # ── QueryBackend ─────────────────────────────────────────────────

    def dry_run(self, request: ExecutionRequest, session: Session | None = None) -> QueryPlan:
        job = self._request("POST", "/jobs", json=self._job_body(request, session, dry_run=True))
        return plan_from_job(job)

    def execute(self, request: ExecutionRequest, session: Session | None = None) -> RowStream:
        job = self._request("POST", "/jobs", json=self._job_body(request, session, dry_run=False))
        job_id = job["jobReference"]["jobId"]
        location = job["jobReference"].get("location", self._location)
        statement_type = job.get("statistics", {}).get("query", {}).get("statementType", "")

        page_size = min(request.max_rows + 1, _MAX_PAGE_SIZE) if request.max_rows else None
        first = self._wait_for_results(job_id, location, page_size)
        columns = [column_from_json(f) for f in first.get("schema", {}).get("fields", [])]
        affected = first.get("numDmlAffectedRows")
        return RowStream(
            columns=columns,
            rows=self._iter_rows(job_id, location, page_size, columns, first),
            job_id=job_id,
            statement_type=statement_type,
            affected_rows=int(affected) if affected is not None else None,
        )

    def cancel(self, job_id: str) -> None:
        params = {"location": self._location} if self._location else {}
        try:
            self._request("POST", f"/jobs/{job_id}/cancel", params=params)
        except BackendError as exc:
            logger.warning("Cancelling job %s failed: %s", job_id, exc)

    # ── results ──────────────────────────────────────────────────────

    def _results_page(
        self, job_id: str, location: str | None, page_size: int | None, page_token: str | None
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "timeoutMs": _POLL_TIMEOUT_MS,
            "formatOptions.useInt64Timestamp": "true",
        }
        if location:
            params["location"] = location
        if page_size:
            params["maxResults"] = page_size
        if page_token:
            params["pageToken"] = page_token
        return self._request("GET", f"/queries/{job_id}", params=params)

    def _wait_for_results(
        self, job_id: str, location: str | None, page_size: int | None
    ) -> dict[str, Any]:
        deadline = time.monotonic() + self._timeout
        while True:
            page = self._results_page(job_id, location, page_size, None)
            if page.get("jobComplete"):
                return page
            if time.monotonic() >= deadline:
                self.cancel(job_id)
                raise BackendError(
                    f"BigQuery job {job_id} exceeded {self._timeout:g}s timeout",
                    transport=True,
                )

    def _iter_rows(
        self,
        job_id: str,
        location: str | None,
        page_size: int | None,
        columns: list[ColumnSchema],
        page: dict[str, Any],
    ) -> Iterator[tuple[Any, ...]]:
        while True:
            for row in page.get("rows", []):
                yield decode_row(columns, row)
            token = page.get("pageToken")
            if not token:
                return
            page = self._results_page(job_id, location, page_size, token)
