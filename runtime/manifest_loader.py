"""Manifest loader — parse and validate sqlgate.yaml."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from contracts.errors import ConfigError
from contracts.manifest import Manifest

MANIFEST_ENV = "SQLGATE_MANIFEST"
DEFAULT_MANIFEST = "./sqlgate.yaml"


def manifest_path(path: str | None = None) -> str:
    """Explicit *path*, else ``$SQLGATE_MANIFEST``, else ./sqlgate.yaml."""
    return path or os.environ.get(MANIFEST_ENV, DEFAULT_MANIFEST)


def load_manifest(path: str) -> Manifest:
    """Load a sqlgate.yaml file and return a validated Manifest.

    Raises ``ConfigError`` for a missing file, bad YAML, or schema violations.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Manifest not found: {path}")

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Manifest {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Manifest must be a YAML mapping, got {type(data).__name__}")

    try:
        manifest = Manifest.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid manifest {path}:\n{exc}") from exc

    for tool in manifest.tool_configs():
        if tool.source not in manifest.sources:
            raise ConfigError(f"Tool '{tool.name}' references unknown source '{tool.source}'")
    return manifest
