"""Filesystem object store for normalized page content."""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Optional

import orjson

from clara_ingest.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".meta.json"


class FileObjectStore:
    """Object store keyed by slash-separated keys under a base directory.

    Each object is written next to a ``<key>.meta.json`` sidecar holding its
    metadata and etag. Keys never escape the base directory.
    """

    def __init__(self, base_dir: str = "data/objects"):
        self.base_dir = Path(base_dir)

        # Create directories
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key.lstrip("/")).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise ValueError(f"Object key escapes store root: {key}")
        return path

    def _put(self, key: str, body: bytes, metadata: dict[str, str]) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        etag = hashlib.md5(body).hexdigest()

        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(body)
        tmp_path.replace(path)

        sidecar = path.with_name(path.name + METADATA_SUFFIX)
        sidecar.write_bytes(orjson.dumps({"key": key, "etag": etag, "size": len(body), "metadata": metadata}))

        logger.debug(f"Saved object: {path}")
        return etag

    def _list(self, prefix: str) -> list[str]:
        if not self.base_dir.exists():
            return []
        keys = []
        for path in self.base_dir.rglob("*"):
            if not path.is_file() or path.name.endswith((METADATA_SUFFIX, ".tmp")):
                continue
            key = path.relative_to(self.base_dir).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    async def put(self, key: str, body: bytes, metadata: Optional[dict[str, str]] = None) -> str:
        """Store ``body`` under ``key`` and return its etag."""
        try:
            return await asyncio.to_thread(self._put, key, body, dict(metadata or {}))
        except OSError as e:
            raise StoreUnavailable(f"Object store write failed for {key}: {e}") from e

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise KeyError(key)
        except OSError as e:
            raise StoreUnavailable(f"Object store read failed for {key}: {e}") from e

    async def get_metadata(self, key: str) -> dict[str, str]:
        sidecar = self._path(key).with_name(self._path(key).name + METADATA_SUFFIX)
        try:
            data = orjson.loads(await asyncio.to_thread(sidecar.read_bytes))
        except FileNotFoundError:
            raise KeyError(key)
        return data.get("metadata", {})

    async def list(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._list, prefix)

    async def ping(self) -> bool:
        return self.base_dir.is_dir()
