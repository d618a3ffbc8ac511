"""Source registry — build and look up resolved sources by name."""

from __future__ import annotations

from typing import Callable, Iterator, Mapping

from contracts.errors import ConfigError
from contracts.manifest import Manifest, SourceConfig
from contracts.source import ResolvedSource

SourceFactory = Callable[[SourceConfig], ResolvedSource]


def _bigquery_factory(config: SourceConfig) -> ResolvedSource:
    from runtime.sources.bigquery import BigQuerySource

    return BigQuerySource.from_config(config)


SOURCE_FACTORIES: dict[str, SourceFactory] = {
    "bigquery": _bigquery_factory,
}


class SourceRegistry(Mapping[str, ResolvedSource]):
    """Read-only mapping of source name to resolved source."""

    def __init__(self, sources: Mapping[str, ResolvedSource] | None = None) -> None:
        self._sources: dict[str, ResolvedSource] = dict(sources or {})

    def __getitem__(self, name: str) -> ResolvedSource:
        return self._sources[name]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._sources))

    def __len__(self) -> int:
        return len(self._sources)


def build_source_registry(
    manifest: Manifest,
    factories: Mapping[str, SourceFactory] | None = None,
) -> SourceRegistry:
    """Create every source the manifest declares."""
    factories = SOURCE_FACTORIES if factories is None else factories
    sources: dict[str, ResolvedSource] = {}
    for name, config in sorted(manifest.sources.items()):
        factory = factories.get(config.kind)
        if factory is None:
            raise ConfigError(f"Source '{name}' has unknown kind '{config.kind}'")
        sources[name] = factory(config)
    return SourceRegistry(sources)
