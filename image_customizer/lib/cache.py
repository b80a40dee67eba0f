"""Content-verified artifact cache.

Layout under ``cache_root``::

    <name>-<version>.<ext>         the artifact
    <name>-<version>.<ext>.hash    sidecar with the lowercase hex SHA-256
    <name>-<version>.<ext>.lock    lock file held while resolving

The sidecar is trusted only while it is at least as new as the artifact.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import DownloadError, IntegrityError, TransportError
from .hashing import compute_file_hash, hashes_match, normalize_hash
from .locks import CriticalSectionManager
from .transport import Transport

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".hash"


@dataclass(frozen=True)
class Artifact:
    name: str
    extension: str
    url_template: str

    def filename(self, version: str) -> str:
        return f"{self.name}-{version}.{self.extension}"

    def url(self, version: str) -> str:
        return self.url_template.format(version=version, name=self.name)


def sidecar_path(path: Path) -> Path:
    return path.with_name(path.name + SIDECAR_SUFFIX)


class PackageCache:
    def __init__(
        self,
        cache_root: str | Path,
        artifact: Artifact,
        transport: Transport,
        *,
        locks: Optional[CriticalSectionManager] = None,
        lock_timeout: float = 600.0,
    ) -> None:
        self.cache_root = Path(cache_root)
        self.artifact = artifact
        self.transport = transport
        # Lock files sit next to the artifacts they guard.
        self.locks = locks or CriticalSectionManager(self.cache_root, poll_interval=1.0)
        self.lock_timeout = lock_timeout

    def path_for(self, version: str) -> Path:
        return self.cache_root / self.artifact.filename(version)

    def cached_hash(self, path: Path) -> str:
        """Return the artifact hash, reusing the sidecar when it is still fresh."""
        sidecar = sidecar_path(path)
        try:
            if sidecar.stat().st_mtime >= path.stat().st_mtime:
                recorded = normalize_hash(sidecar.read_text(encoding="utf-8"))
                if recorded:
                    return recorded
        except FileNotFoundError:
            pass

        logger.info("Hashing %s (no fresh sidecar)", path)
        actual = compute_file_hash(path)
        sidecar.write_text(actual + "\n", encoding="utf-8")
        return actual

    def _verify_cached(self, path: Path, expected_hash: str) -> None:
        actual = self.cached_hash(path)
        if not hashes_match(actual, expected_hash):
            raise IntegrityError(str(path), normalize_hash(expected_hash), actual)

    def invalidate(self, version: str) -> None:
        path = self.path_for(version)
        for p in (path, sidecar_path(path)):
            try:
                p.unlink()
                logger.info("Removed %s", p)
            except FileNotFoundError:
                pass

    def close(self) -> None:
        """Release the transport's connections, if it holds any."""
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    def resolve(self, version: str, expected_hash: str) -> Path:
        """Return a local path whose content hashes to ``expected_hash``.

        A cached copy that fails verification is deleted and downloaded
        again. Raises DownloadError when the transport fails and
        IntegrityError when the fresh download does not match.
        """
        self.cache_root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(version)

        with self.locks.critical_section(path.name, self.lock_timeout):
            if path.exists():
                try:
                    self._verify_cached(path, expected_hash)
                    logger.info("Cache hit for %s %s: %s", self.artifact.name, version, path)
                    return path
                except IntegrityError as e:
                    logger.warning("Discarding stale cache entry: %s", e)
                    self.invalidate(version)

            return self._fill(version, path, expected_hash)

    def _fill(self, version: str, path: Path, expected_hash: str) -> Path:
        url = self.artifact.url(version)
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_root, prefix=path.name + ".", suffix=".partial")
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            try:
                self.transport.download(url, tmp)
            except TransportError as e:
                raise DownloadError(url, str(e)) from e

            actual = compute_file_hash(tmp)
            if not hashes_match(actual, expected_hash):
                raise IntegrityError(url, normalize_hash(expected_hash), actual)

            os.replace(tmp, path)
            sidecar_path(path).write_text(actual + "\n", encoding="utf-8")
        finally:
            if tmp.exists():
                tmp.unlink()

        logger.info("Cached %s %s at %s", self.artifact.name, version, path)
        return path
