"""Shared initialisation logic for the sqlgate HTTP server, MCP server and CLI."""

from __future__ import annotations

import logging
from typing import Mapping

from contracts.manifest import Manifest
from runtime.audit.logger import JsonlAuditLogger
from runtime.manifest_loader import load_manifest, manifest_path
from runtime.sources.registry import SourceFactory, SourceRegistry, build_source_registry
from runtime.tool_router import ToolRouter
from runtime.tools.registry import ToolRegistry, build_tool_registry

logger = logging.getLogger(__name__)


class SqlGateComponents:
    """Container for initialised sqlgate components."""

    def __init__(
        self,
        manifest: Manifest,
        sources: SourceRegistry,
        registry: ToolRegistry,
        audit: JsonlAuditLogger,
    ) -> None:
        self.manifest = manifest
        self.sources = sources
        self.registry = registry
        self.audit = audit
        self.router = ToolRouter(
            registry,
            audit,
            app_name=manifest.app.name,
            redact_sql=manifest.audit.redact_sql,
        )


def build_components(
    manifest: Manifest,
    source_factories: Mapping[str, SourceFactory] | None = None,
) -> SqlGateComponents:
    """Resolve sources, initialize tools and open the audit log."""
    sources = build_source_registry(manifest, source_factories)
    registry = build_tool_registry(manifest, sources)
    logger.info(
        "Initialized %d source(s) and %d tool(s) for %s",
        len(sources),
        len(registry.list_tools()),
        manifest.app.name,
    )
    return SqlGateComponents(
        manifest=manifest,
        sources=sources,
        registry=registry,
        audit=JsonlAuditLogger(manifest.audit.path),
    )


def init_sqlgate(path: str | None = None) -> SqlGateComponents:
    """Load the manifest and build every component.

    Uses ``SQLGATE_MANIFEST`` if *path* is not provided.
    """
    return build_components(load_manifest(manifest_path(path)))
