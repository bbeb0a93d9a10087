# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/pool_store.py
"""
Persistence for the credential pool.

The pool is stored as one JSON document and always read or written whole.
There are no partial-field transactions: the last writer wins.
"""

import asyncio
import copy
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from .utils.resilient_io import safe_read_json, safe_write_json

lib_logger = logging.getLogger("rotator_gateway")


class PoolStore(ABC):
    """Interface for client-local credential pool storage."""

    @abstractmethod
    async def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored pool document, or None if nothing is stored."""
        raise NotImplementedError

    @abstractmethod
    async def save(self, document: Dict[str, Any]) -> bool:
        """Replace the stored pool document. Returns False if the write failed."""
        raise NotImplementedError

    def get_stats(self) -> Dict[str, Any]:
        return {}


class InMemoryPoolStore(PoolStore):
    """Process-local store. Documents are deep-copied in both directions."""

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        self._document = copy.deepcopy(document) if document else None
        self._stats = {"loads": 0, "saves": 0}

    async def load(self) -> Optional[Dict[str, Any]]:
        self._stats["loads"] += 1
        return copy.deepcopy(self._document)

    async def save(self, document: Dict[str, Any]) -> bool:
        self._stats["saves"] += 1
        self._document = copy.deepcopy(document)
        return True

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)


class JsonFilePoolStore(PoolStore):
    """
    Stores the pool document in a JSON file, replaced atomically on save.

    Disk I/O runs in a worker thread so the event loop is not blocked.

    Usage:
        store = JsonFilePoolStore(Path("data/credential_pool.json"))
        document = await store.load()
        await store.save(pool.to_document())
    """

    def __init__(self, file_path: Path):
        self._file_path = Path(file_path)
        self._lock = asyncio.Lock()
        self._last_write: Optional[float] = None
        self._stats = {
            "loads": 0,
            "writes": 0,
            "write_errors": 0,
        }

    async def load(self) -> Optional[Dict[str, Any]]:
        async with self._lock:
            self._stats["loads"] += 1
            document = await asyncio.to_thread(safe_read_json, self._file_path, lib_logger)
        if document is not None and not isinstance(document, dict):
            lib_logger.warning(
                f"Ignoring {self._file_path.name}: expected a JSON object"
            )
            return None
        if document is not None:
            lib_logger.debug(f"Loaded credential pool from {self._file_path.name}")
        return document

    async def save(self, document: Dict[str, Any]) -> bool:
        async with self._lock:
            success = await asyncio.to_thread(
                safe_write_json, self._file_path, document, lib_logger, True, 2
            )
            if success:
                self._stats["writes"] += 1
                self._last_write = time.time()
            else:
                self._stats["write_errors"] += 1
            return success

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "last_write": self._last_write,
            "file_path": str(self._file_path),
        }
