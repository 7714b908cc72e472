"""Shared caches.

These caches are process-global, managed by
`~ldaplookup.factory.ProcessContext`. The common theme is some storage
wrapped in an `asyncio.Lock`.
"""

from __future__ import annotations

import asyncio
from abc import ABCMeta, abstractmethod
from types import MappingProxyType

from .attributes import parse_display_names

__all__ = [
    "BaseCache",
    "DisplayNameCache",
]


class BaseCache(metaclass=ABCMeta):
    """Base class for caches managed by the process context."""

    @abstractmethod
    async def clear(self) -> None:
        """Invalidate the cache.

        Used primarily for testing.
        """


class DisplayNameCache(BaseCache):
    """Cache of the parsed display name mapping.

    The mapping option is a string that has to be parsed before use. The
    parsed table is kept, keyed by the raw string, and only rebuilt when a
    batch arrives with a different raw string. Reads and rebuilds are done
    under a lock so that no lookup sees a partially built table.
    """

    def __init__(self) -> None:
        self._raw: str | None = None
        self._mapping: MappingProxyType[str, str] = MappingProxyType({})
        self._lock = asyncio.Lock()

    async def clear(self) -> None:
        """Invalidate the cache.

        Used primarily for testing.
        """
        async with self._lock:
            self._raw = None
            self._mapping = MappingProxyType({})

    async def get(self, raw: str) -> MappingProxyType[str, str]:
        """Return the display name table for a mapping string.

        Parameters
        ----------
        raw
            Display name mapping option from the lookup configuration.

        Returns
        -------
        MappingProxyType
            Read-only mapping from attribute name to display label.
        """
        async with self._lock:
            if raw != self._raw:
                self._mapping = MappingProxyType(parse_display_names(raw))
                self._raw = raw
            return self._mapping

    @property
    def raw(self) -> str | None:
        """Mapping string the cached table was built from, if any."""
        return self._raw
