"""Tool registry — build, look-up, and export sqlgate tools."""

from __future__ import annotations

from typing import Callable, Mapping

from contracts.errors import ConfigError
from contracts.manifest import Manifest, ToolConfig
from contracts.source import ResolvedSource
from contracts.tool_sdk import BaseTool

ToolFactory = Callable[[ToolConfig], BaseTool]


def _execute_sql_factory(config: ToolConfig) -> BaseTool:
    from runtime.tools.execute_sql import ExecuteSqlTool

    return ExecuteSqlTool(config)


TOOL_KINDS: dict[str, ToolFactory] = {
    "execute-sql": _execute_sql_factory,
}


class ToolRegistry:
    """In-memory registry of initialized tools."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        """Register a tool instance.  Duplicate names are a config error."""
        name = tool.definition().name
        if name in self._tools:
            raise ConfigError(f"Tool '{name}' is defined more than once")
        self._tools[name] = tool

    def get(self, name: str) -> BaseTool:
        """Return a registered tool by name, or raise ``KeyError``."""
        return self._tools[name]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def list_tools(self) -> list[str]:
        """Return sorted list of registered tool names."""
        return sorted(self._tools)

    def get_openai_definitions(self) -> list[dict]:
        """Export all tools in OpenAI function-calling format."""
        defs: list[dict] = []
        for name in sorted(self._tools):
            defn = self._tools[name].definition()
            defs.append(
                {
                    "type": "function",
                    "function": {
                        "name": defn.name,
                        "description": defn.description,
                        "parameters": defn.input_schema,
                    },
                }
            )
        return defs


def build_tool_registry(
    manifest: Manifest,
    sources: Mapping[str, ResolvedSource],
    kinds: Mapping[str, ToolFactory] | None = None,
) -> ToolRegistry:
    """Create and initialize every tool the manifest declares."""
    kinds = TOOL_KINDS if kinds is None else kinds
    registry = ToolRegistry()
    for config in manifest.tool_configs():
        factory = kinds.get(config.kind)
        if factory is None:
            raise ConfigError(f"Tool '{config.name}' has unknown kind '{config.kind}'")
        tool = factory(config)
        tool.initialize(sources)
        registry.register(tool)
    return registry
