"""sqlgate MCP server — exposes every configured tool over stdio transport."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from mcp.server.fastmcp import FastMCP

from contracts.tool_sdk import ToolInput
from runtime.mcp_helpers import SqlGateComponents, init_sqlgate

logger = logging.getLogger(__name__)

# ── Initialisation ────────────────────────────────────────────────────

_components: SqlGateComponents | None = None


def _get_components() -> SqlGateComponents:
    """Return initialised components, lazily loading on first access."""
    global _components  # noqa: PLW0603
    if _components is None:
        _components = init_sqlgate()
    return _components


async def _run_tool(tool_name: str, args: dict[str, Any]) -> str:
    """Run one tool call through the router.

    Returns a JSON string with the result, or the error and its kind.
    """
    c = _get_components()
    output = await c.router.run(
        ToolInput(tool_name=tool_name, arguments=args, call_id=str(uuid.uuid4())),
        transport="mcp",
    )
    if output.success:
        return json.dumps({"result": output.result, "success": True})
    return json.dumps(
        {
            "error": output.error,
            "kind": output.error_kind,
            "retryable": output.retryable,
            "success": False,
        }
    )


# ── MCP tool wrappers ─────────────────────────────────────────────────


def _execute_sql_handler(tool_name: str):
    async def handler(
        sql: str,
        dry_run: bool = False,
        default_dataset: str | None = None,
    ) -> str:
        args: dict[str, Any] = {"sql": sql, "dry_run": dry_run}
        if default_dataset:
            args["default_dataset"] = default_dataset
        return await _run_tool(tool_name, args)

    handler.__name__ = tool_name.replace("-", "_")
    return handler


def create_server(components: SqlGateComponents) -> FastMCP:
    """Build a FastMCP server with one MCP tool per configured tool.

    stdio carries no caller identity, so tools that need verified auth
    services or the caller's own credentials are left out.
    """
    server = FastMCP(components.manifest.app.name or "sqlgate")
    for name in components.registry.list_tools():
        tool = components.registry.get(name)
        definition = tool.definition()
        if definition.auth_required or tool.requires_client_authorization():
            logger.warning("Not exposing tool %s over MCP: it needs caller authorization", name)
            continue
        server.add_tool(
            _execute_sql_handler(name),
            name=name,
            description=definition.description,
        )
    return server


def serve() -> None:
    """Load the manifest and serve over stdio until the client disconnects."""
    create_server(_get_components()).run(transport="stdio")


# ── Entry point ───────────────────────────────────────────────────────

if __name__ == "__main__":
    serve()
