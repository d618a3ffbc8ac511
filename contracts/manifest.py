"""Manifest (sqlgate.yaml) schema — Pydantic models.

Keys accept both the camelCase names used by tool declarations
(``maxQueryResultRows``, ``authRequired``) and their snake_case equivalents.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _ManifestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")


# ── Top-level sections ──────────────────────────────────────────────


class AppInfo(_ManifestModel):
    name: str
    version: str = "0.0.1"


class ServerConfig(_ManifestModel):
    host: str = "127.0.0.1"
    port: int = 5000
    # Only enable behind a proxy that authenticates callers and sets X-Auth-Services itself.
    trust_auth_services_header: bool = Field(False, alias="trustAuthServicesHeader")


# ── Sources ─────────────────────────────────────────────────────────


class WriteMode(str, Enum):
    BLOCKED = "blocked"
    ALLOWED = "allowed"
    PROTECTED = "protected"


class SessionConfig(_ManifestModel):
    enabled: bool = False
    pool_size: int = Field(1, alias="poolSize", ge=1)
    acquire_timeout: float = Field(5.0, alias="acquireTimeout", gt=0)


class SourceConfig(_ManifestModel):
    kind: Literal["bigquery"] = "bigquery"
    project: str
    location: str | None = None
    write_mode: WriteMode = Field(WriteMode.ALLOWED, alias="writeMode")
    allowed_datasets: list[str] = Field(default_factory=list, alias="allowedDatasets")
    use_client_oauth: bool = Field(False, alias="useClientOAuth")
    max_query_result_rows: int = Field(0, alias="maxQueryResultRows", ge=0)
    allow_unclassified: bool = Field(False, alias="allowUnclassified")
    sessions: SessionConfig = SessionConfig()
    timeout: float = Field(60.0, gt=0)
    api_endpoint: str = Field("https://bigquery.googleapis.com", alias="apiEndpoint")


# ── Per-tool config ──────────────────────────────────────────────────


class ToolConfig(_ManifestModel):
    name: str = ""
    kind: Literal["execute-sql"] = "execute-sql"
    source: str
    description: str = ""
    max_query_result_rows: int = Field(0, alias="maxQueryResultRows", ge=0)
    auth_required: list[str] = Field(default_factory=list, alias="authRequired")


# ── Audit ────────────────────────────────────────────────────────────


class AuditConfig(_ManifestModel):
    path: str = "audit.jsonl"
    redact_sql: bool = Field(False, alias="redactSql")


# ── Root manifest ────────────────────────────────────────────────────


class Manifest(_ManifestModel):
    app: AppInfo
    server: ServerConfig = ServerConfig()
    sources: dict[str, SourceConfig] = {}
    tools: dict[str, ToolConfig] = {}
    audit: AuditConfig = AuditConfig()

    def tool_configs(self) -> list[ToolConfig]:
        """Return tool configs with ``name`` filled in from the manifest key."""
        return [
            cfg if cfg.name == name else cfg.model_copy(update={"name": name})
            for name, cfg in sorted(self.tools.items())
        ]
