"""
disk_cache.py — Time-limited file cache for extracted artifacts.

Files are stored as ``{root}/{job_id}.{artifact_key}`` and are considered valid
while their modification time is younger than the TTL.  Expired files are not
deleted; the next ``put`` simply overwrites them.
"""

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Protocol

CACHE_TTL_SECONDS = 60 * 60

logger = logging.getLogger("disk_cache")


class CacheStore(Protocol):
    def path_for(self, job_id: str, artifact_key: str) -> Path: ...

    def get(self, job_id: str, artifact_key: str) -> Path | None: ...

    def put(self, job_id: str, artifact_key: str, data: bytes) -> Path: ...


def _check_component(value: str, what: str):
    if value in ("", ".", "..") or "/" in value or "\\" in value:
        raise ValueError(f"Invalid {what}: {value!r}")


class DiskCache:
    """Filesystem ``CacheStore`` keyed by ``{job_id}.{artifact_key}``."""

    def __init__(self, root: Path, ttl: float = CACHE_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.root = Path(root)
        self.ttl = ttl
        self.clock = clock

    def path_for(self, job_id: str, artifact_key: str) -> Path:
        _check_component(job_id, "job id")
        _check_component(artifact_key, "artifact key")
        return self.root / f"{job_id}.{artifact_key}"

    def get(self, job_id: str, artifact_key: str) -> Path | None:
        path = self.path_for(job_id, artifact_key)
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        if self.clock() - mtime >= self.ttl:
            logger.debug("Cache entry %s expired", path.name)
            return None
        return path

    def put(self, job_id: str, artifact_key: str, data: bytes) -> Path:
        path = self.path_for(job_id, artifact_key)
        self.root.mkdir(parents=True, exist_ok=True)
        # Atomic write via temp file (concurrent writers: last one wins)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Cached %d bytes to %s", len(data), path)
        return path
