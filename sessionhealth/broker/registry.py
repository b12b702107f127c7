"""Registry of data sources, keyed by id."""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from ..core.models import DataSourceDescriptor


class SourceRegistry:
    def __init__(self):
        self._sources: Dict[str, DataSourceDescriptor] = {}

    def register(self, descriptor: DataSourceDescriptor) -> None:
        """Add a source, replacing any with the same id."""
        self._sources[descriptor.id] = descriptor

    def get(self, source_id: str) -> Optional[DataSourceDescriptor]:
        return self._sources.get(source_id)

    def get_all(self) -> List[DataSourceDescriptor]:
        return list(self._sources.values())

    def get_by_tier(self, tier: int) -> List[DataSourceDescriptor]:
        return [d for d in self._sources.values() if d.tier == tier]

    def get_dependents(self, source_id: str) -> List[DataSourceDescriptor]:
        return [d for d in self._sources.values() if source_id in d.dependencies]

    def has(self, source_id: str) -> bool:
        return source_id in self._sources

    def remove(self, source_id: str) -> bool:
        return self._sources.pop(source_id, None) is not None

    def size(self) -> int:
        return len(self._sources)

    def clear(self) -> None:
        self._sources.clear()

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._sources

    def __iter__(self) -> Iterator[DataSourceDescriptor]:
        return iter(list(self._sources.values()))
