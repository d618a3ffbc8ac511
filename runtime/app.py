"""sqlgate FastAPI runtime server."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from contracts.audit import AuditEntry, AuditEvent
from contracts.tool_sdk import ToolInput, ToolOutput
from runtime.audit.query import query_filtered, read_entries
from runtime.mcp_helpers import SqlGateComponents, init_sqlgate
from runtime.tool_router import UNKNOWN_TOOL

VERSION = "0.1.0"

# ── Module-level state (set during lifespan) ─────────────────────────

_components: SqlGateComponents | None = None
_start_time: float = 0.0

ERROR_STATUS: dict[str, int] = {
    "parameter_error": 400,
    "unauthorized": 401,
    "policy_denied": 403,
    UNKNOWN_TOOL: 404,
    "session_busy": 429,
    "config_error": 500,
    "normalization_error": 500,
    "backend_error": 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialise all components on startup."""
    global _components, _start_time  # noqa: PLW0603

    _start_time = time.time()
    _components = init_sqlgate()
    try:
        yield
    finally:
        _components = None


app = FastAPI(title="sqlgate", version=VERSION, lifespan=lifespan)


class InvokeRequest(BaseModel):
    params: dict[str, Any] = {}
    call_id: str | None = None
    timeout: float | None = None


def _require() -> SqlGateComponents:
    if _components is None:
        raise HTTPException(status_code=503, detail="Runtime not initialised")
    return _components


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Authorization header must be 'Bearer <token>'")
    return token.strip()


# ── Endpoints ────────────────────────────────────────────────────────


@app.get("/v1/health")
async def health() -> dict[str, Any]:
    """Health check with a manifest summary."""
    result: dict[str, Any] = {"status": "ok", "version": VERSION}
    result["uptime_seconds"] = round(time.time() - _start_time, 1) if _start_time else 0

    if _components is not None:
        m = _components.manifest
        result["manifest"] = {
            "app": m.app.name,
            "app_version": m.app.version,
            "sources": sorted(m.sources),
            "tools": _components.registry.list_tools(),
        }
        log_path = _components.audit.path
        if log_path.exists():
            result["audit_log_size_bytes"] = log_path.stat().st_size
            result["audit_log_entries"] = len(read_entries(log_path))
    return result


@app.get("/v1/tools")
async def list_tools() -> dict[str, Any]:
    """Function-calling definitions of every configured tool."""
    c = _require()
    return {"tools": c.registry.get_openai_definitions()}


@app.post("/v1/tools/{name}/invoke", response_model=ToolOutput)
async def invoke_tool(
    name: str,
    body: InvokeRequest,
    authorization: str | None = Header(None),
    x_auth_services: str | None = Header(None),
) -> JSONResponse:
    """Invoke a tool; failures come back as a ToolOutput with a mapped status.

    ``X-Auth-Services`` is honoured only when ``server.trustAuthServicesHeader``
    is set; otherwise tools with ``authRequired`` answer 401.
    """
    c = _require()
    verified: list[str] = []
    if c.manifest.server.trust_auth_services_header:
        verified = [s.strip() for s in (x_auth_services or "").split(",") if s.strip()]
    output = await c.router.run(
        ToolInput(tool_name=name, arguments=body.params, call_id=body.call_id or str(uuid.uuid4())),
        transport="http",
        access_token=_bearer(authorization),
        verified_auth_services=verified,
        timeout=body.timeout,
    )
    status = 200 if output.success else ERROR_STATUS.get(output.error_kind or "", 500)
    return JSONResponse(status_code=status, content=output.model_dump(mode="json"))


@app.get("/v1/audit/logs")
async def audit_logs(
    event: AuditEvent | None = Query(None),
    tool: str | None = Query(None),
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    request_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    """Filtered, paginated audit log query."""
    c = _require()
    entries, total = query_filtered(
        c.manifest.audit.path,
        event=event,
        tool=tool,
        since=since,
        until=until,
        request_id=request_id,
        limit=limit,
        offset=offset,
    )
    return {"entries": [e.model_dump(mode="json") for e in entries], "total": total}


@app.get("/v1/audit/{request_id}")
async def audit_query(request_id: str) -> list[AuditEntry]:
    """Return audit entries for a given request_id."""
    return _require().audit.query_by_request(request_id)
