"""sqlgate CLI — validate manifests, serve tools, invoke them, and query audit logs."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from pathlib import Path

# Ensure project root is importable when running as script
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from contracts.errors import ConfigError  # noqa: E402
from runtime.manifest_loader import DEFAULT_MANIFEST, MANIFEST_ENV, load_manifest  # noqa: E402


def _load_or_exit(path: str):
    try:
        return load_manifest(path)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_validate(args: argparse.Namespace) -> None:
    """Validate a sqlgate.yaml manifest and, optionally, resolve its sources."""
    manifest = _load_or_exit(args.manifest)

    print(f"Manifest OK: {manifest.app.name} v{manifest.app.version}")
    for name, source in sorted(manifest.sources.items()):
        allowed = ", ".join(source.allowed_datasets) or "(any)"
        print(
            f"  Source {name}: {source.kind} project={source.project} "
            f"writeMode={source.write_mode.value} datasets={allowed}"
        )
    for tool in manifest.tool_configs():
        cap = tool.max_query_result_rows or "unlimited"
        print(f"  Tool {tool.name}: {tool.kind} -> {tool.source} (max rows {cap})")
    print(f"  Audit path: {manifest.audit.path}")

    if args.resolve:
        from runtime.mcp_helpers import build_components

        try:
            build_components(manifest)
        except ConfigError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
        print("  Sources and tools initialized")


def cmd_run(args: argparse.Namespace) -> None:
    """Start the sqlgate HTTP server."""
    os.environ[MANIFEST_ENV] = args.manifest
    manifest = _load_or_exit(args.manifest)
    host = args.host or manifest.server.host
    port = args.port or manifest.server.port

    print(f"Starting sqlgate for '{manifest.app.name}'...")
    print(f"  Manifest: {args.manifest}")
    print(f"  Host:     {host}")
    print(f"  Port:     {port}")
    print()

    import uvicorn

    uvicorn.run(
        "runtime.app:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


def cmd_mcp(args: argparse.Namespace) -> None:
    """Serve the configured tools over MCP stdio."""
    os.environ[MANIFEST_ENV] = args.manifest
    _load_or_exit(args.manifest)

    from runtime.mcp_server import serve

    serve()


def cmd_invoke(args: argparse.Namespace) -> None:
    """Invoke one tool and print its output as JSON."""
    from contracts.tool_sdk import ToolInput
    from runtime.mcp_helpers import build_components

    manifest = _load_or_exit(args.manifest)
    try:
        components = build_components(manifest)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    params: dict[str, object] = {"sql": args.sql}
    if args.dry_run:
        params["dry_run"] = True
    if args.default_dataset:
        params["default_dataset"] = args.default_dataset

    output = asyncio.run(
        components.router.run(
            ToolInput(tool_name=args.tool, arguments=params, call_id=str(uuid.uuid4())),
            transport="cli",
            access_token=args.token or os.environ.get("SQLGATE_ACCESS_TOKEN"),
            verified_auth_services=args.auth_service,
            timeout=args.timeout,
        )
    )
    print(json.dumps(output.model_dump(mode="json"), indent=2))
    if not output.success:
        sys.exit(1)


def cmd_logs(args: argparse.Namespace) -> None:
    """Query audit logs."""
    from contracts.audit import AuditEvent
    from runtime.audit.query import query_by_request, query_filtered, tail

    log_path = args.log_path

    if not Path(log_path).exists():
        print(f"No audit log found at {log_path}", file=sys.stderr)
        sys.exit(1)

    if args.request_id:
        entries = query_by_request(log_path, args.request_id)
    elif args.event or args.tool:
        event = None
        if args.event:
            try:
                event = AuditEvent(args.event)
            except ValueError:
                valid = ", ".join(e.value for e in AuditEvent)
                print(f"Unknown event type: {args.event}", file=sys.stderr)
                print(f"Valid events: {valid}", file=sys.stderr)
                sys.exit(1)
        entries, _ = query_filtered(log_path, event=event, tool=args.tool, limit=args.limit)
        entries.reverse()
    else:
        entries = tail(log_path, n=args.limit)

    if not entries:
        print("No matching audit entries.")
        return

    for entry in entries:
        record = entry.model_dump(mode="json")
        if args.json:
            print(json.dumps(record))
        else:
            ts = record["ts"][:19]
            rid = record["request_id"][:8]
            detail = json.dumps(record.get("detail", {}))
            print(f"{ts}  [{record['event']:12s}]  {rid}  {record['tool']}  {detail}")


def build_parser() -> argparse.ArgumentParser:
    default_manifest = os.environ.get(MANIFEST_ENV, DEFAULT_MANIFEST)

    parser = argparse.ArgumentParser(
        prog="sqlgate",
        description="sqlgate — policy-gated SQL tools for BigQuery",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Diagnostic log level",
    )
    sub = parser.add_subparsers(dest="command")

    # validate
    p_val = sub.add_parser("validate", help="Validate a sqlgate.yaml manifest")
    p_val.add_argument("manifest", nargs="?", default=default_manifest, help="Path to manifest")
    p_val.add_argument(
        "--resolve", action="store_true", help="Also build sources and initialize tools"
    )
    p_val.set_defaults(func=cmd_validate)

    # run
    p_run = sub.add_parser("run", help="Start the sqlgate HTTP server")
    p_run.add_argument("manifest", nargs="?", default=default_manifest, help="Path to manifest")
    p_run.add_argument("--host", default=None, help="Bind address (default: manifest server.host)")
    p_run.add_argument("--port", type=int, default=None, help="Port (default: manifest server.port)")
    p_run.add_argument("--reload", action="store_true", help="Enable auto-reload")
    p_run.set_defaults(func=cmd_run)

    # mcp
    p_mcp = sub.add_parser("mcp", help="Serve tools over MCP stdio")
    p_mcp.add_argument("manifest", nargs="?", default=default_manifest, help="Path to manifest")
    p_mcp.set_defaults(func=cmd_mcp)

    # invoke
    p_inv = sub.add_parser("invoke", help="Invoke a tool once")
    p_inv.add_argument("tool", help="Tool name")
    p_inv.add_argument("sql", help="SQL statement")
    p_inv.add_argument("--manifest", "-m", default=default_manifest, help="Path to manifest")
    p_inv.add_argument("--dry-run", action="store_true", help="Return the plan only")
    p_inv.add_argument("--default-dataset", "-d", help="Dataset for unqualified tables")
    p_inv.add_argument("--token", help="Caller access token (or $SQLGATE_ACCESS_TOKEN)")
    p_inv.add_argument(
        "--auth-service", action="append", default=[], help="Verified auth service (repeatable)"
    )
    p_inv.add_argument("--timeout", type=float, default=None, help="Invocation timeout in seconds")
    p_inv.set_defaults(func=cmd_invoke)

    # logs
    p_logs = sub.add_parser("logs", help="Query audit logs")
    p_logs.add_argument("log_path", help="Path to audit JSONL file")
    p_logs.add_argument("--request-id", "-r", help="Filter by request ID")
    p_logs.add_argument("--event", "-e", help="Filter by event type")
    p_logs.add_argument("--tool", "-t", help="Filter by tool name")
    p_logs.add_argument("--limit", "-n", type=int, default=20, help="Max entries")
    p_logs.add_argument("--json", action="store_true", help="Output raw JSON")
    p_logs.set_defaults(func=cmd_logs)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    args.func(args)


if __name__ == "__main__":
    main()
