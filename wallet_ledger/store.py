"""
Document store port and an in-memory implementation.

The ledger only relies on four primitives: point read, merge-update, append
with a generated id, and an optimistic compare-and-swap on a single path.
"""

import asyncio
import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)


class _Abort:
    def __repr__(self) -> str:
        return "ABORT"


ABORT = _Abort()


@dataclass
class CASResult:
    committed: bool
    value: Any = None


def split_path(path: str) -> list[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError("Empty store path")
    return parts


class DocumentStore(ABC):
    """Hierarchical key-path store with single-path optimistic transactions."""

    @abstractmethod
    async def read(self, path: str) -> Optional[Any]:
        """Return a copy of the value at path, or None when absent."""

    @abstractmethod
    async def write(self, path: str, partial: dict) -> None:
        """Merge the given children into the value at path."""

    @abstractmethod
    async def append_child(self, path: str, value: Any) -> str:
        """Store value under a new generated child id of path and return the id."""

    @abstractmethod
    async def compare_and_swap(self, path: str, fn: Callable[[Optional[Any]], Any]) -> CASResult:
        """
        Run fn against the current value and commit its result if nothing else
        wrote the path in between; fn is re-run against the latest value on
        conflict. fn returns ABORT to decline the write.
        """


class InMemoryDocumentStore(DocumentStore):
    """
    Tree-shaped store kept in nested dicts.

    Every write bumps a version counter on the written path and all of its
    ancestors; a CAS commits only when the versions observed on its path and
    ancestors are unchanged at commit time.
    """

    def __init__(self, *, max_retries: int = 25):
        self._root: dict = {}
        self._versions: dict[str, int] = {}
        self._max_retries = max_retries
        self._g = threading.RLock()

    # -- tree helpers --

    def _get(self, parts: list[str]) -> Optional[Any]:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _set(self, parts: list[str], value: Any) -> None:
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = value

    def _bump(self, parts: list[str]) -> None:
        for i in range(1, len(parts) + 1):
            key = "/".join(parts[:i])
            self._versions[key] = self._versions.get(key, 0) + 1

    def _stamp(self, parts: list[str]) -> tuple:
        return tuple(self._versions.get("/".join(parts[:i]), 0) for i in range(1, len(parts) + 1))

    # -- DocumentStore --

    async def read(self, path: str) -> Optional[Any]:
        parts = split_path(path)
        with self._g:
            return copy.deepcopy(self._get(parts))

    async def write(self, path: str, partial: dict) -> None:
        parts = split_path(path)
        with self._g:
            current = self._get(parts)
            merged = dict(current) if isinstance(current, dict) else {}
            for key, value in partial.items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = copy.deepcopy(value)
            self._set(parts, merged)
            self._bump(parts)

    async def append_child(self, path: str, value: Any) -> str:
        parts = split_path(path)
        child_id = uuid4().hex
        with self._g:
            self._set(parts + [child_id], copy.deepcopy(value))
            self._bump(parts + [child_id])
        return child_id

    async def compare_and_swap(self, path: str, fn: Callable[[Optional[Any]], Any]) -> CASResult:
        parts = split_path(path)
        for attempt in range(self._max_retries):
            with self._g:
                stamp = self._stamp(parts)
                current = copy.deepcopy(self._get(parts))

            new_value = fn(current)
            if new_value is ABORT:
                return CASResult(committed=False, value=current)

            # Suspension point between the read and the commit, as with a
            # remote store round trip.
            await asyncio.sleep(0)

            with self._g:
                if self._stamp(parts) != stamp:
                    logger.debug("CAS conflict on %s (attempt %d)", path, attempt + 1)
                    continue
                self._set(parts, copy.deepcopy(new_value))
                self._bump(parts)
                return CASResult(committed=True, value=copy.deepcopy(new_value))

        logger.warning("CAS on %s gave up after %d attempts", path, self._max_retries)
        return CASResult(committed=False, value=None)

    def seed(self, path: str, value: Any) -> None:
        """Synchronously place a value at path (fixtures and local dev)."""
        parts = split_path(path)
        self._set(parts, copy.deepcopy(value))
        self._bump(parts)
