"""PackageCache: hit, miss, stale entries and download failures."""

from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

from image_customizer.errors import DownloadError, IntegrityError
from image_customizer.lib.cache import Artifact, PackageCache, sidecar_path
from image_customizer.lib.hashing import compute_file_hash

from .fakes import FakeTransport, sha256_hex

ARTIFACT = Artifact(
    name="PowerShell",
    extension="zip",
    url_template="https://example.invalid/PowerShell-{version}-win-x64.zip",
)
PAYLOAD = b"pwsh 7.3.4 package bytes"
H = sha256_hex(PAYLOAD)
URL = ARTIFACT.url("7.3.4")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport({URL: PAYLOAD})


@pytest.fixture
def cache(tmp_path: Path, transport: FakeTransport) -> PackageCache:
    return PackageCache(tmp_path / "cache", ARTIFACT, transport, lock_timeout=5)


class TestArtifact:
    def test_layout(self, cache: PackageCache, tmp_path: Path):
        assert cache.path_for("7.3.4") == tmp_path / "cache" / "PowerShell-7.3.4.zip"
        assert sidecar_path(cache.path_for("7.3.4")).name == "PowerShell-7.3.4.zip.hash"
        assert URL == "https://example.invalid/PowerShell-7.3.4-win-x64.zip"


class TestResolve:
    def test_empty_cache_downloads_once(self, cache: PackageCache, transport: FakeTransport):
        path = cache.resolve("7.3.4", H)
        assert transport.calls == [URL]
        assert compute_file_hash(path) == H
        assert sidecar_path(path).read_text(encoding="utf-8").strip() == H
        assert (cache.cache_root / "PowerShell-7.3.4.zip.lock").exists()
        assert not list(cache.cache_root.glob("*.partial"))

    def test_hit_makes_no_network_calls(self, cache: PackageCache, transport: FakeTransport):
        cache.resolve("7.3.4", H)
        transport.calls.clear()
        path = cache.resolve("7.3.4", H.upper())
        assert transport.calls == []
        assert path.read_bytes() == PAYLOAD

    def test_stale_entry_is_replaced(self, cache: PackageCache, transport: FakeTransport):
        path = cache.path_for("7.3.4")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"truncated")
        sidecar_path(path).write_text(sha256_hex(b"truncated"), encoding="utf-8")

        result = cache.resolve("7.3.4", H)
        assert transport.calls == [URL]
        assert result.read_bytes() == PAYLOAD
        assert sidecar_path(result).read_text(encoding="utf-8").strip() == H

    def test_old_sidecar_is_not_trusted(self, cache: PackageCache, transport: FakeTransport):
        path = cache.path_for("7.3.4")
        path.parent.mkdir(parents=True)
        path.write_bytes(PAYLOAD)
        sidecar = sidecar_path(path)
        sidecar.write_text("0" * 64, encoding="utf-8")
        st = path.stat()
        os.utime(sidecar, (st.st_atime - 100, st.st_mtime - 100))

        assert cache.resolve("7.3.4", H) == path
        assert transport.calls == []
        assert sidecar.read_text(encoding="utf-8").strip() == H

    def test_fresh_sidecar_is_reused(self, cache: PackageCache, monkeypatch):
        cache.resolve("7.3.4", H)

        def no_hashing(*args, **kwargs):
            raise AssertionError("hash should come from the sidecar")

        monkeypatch.setattr("image_customizer.lib.cache.compute_file_hash", no_hashing)
        assert cache.cached_hash(cache.path_for("7.3.4")) == H

    def test_transport_failure_raises_download_error(self, tmp_path: Path):
        cache = PackageCache(tmp_path / "cache", ARTIFACT, FakeTransport({}, fail=True))
        with pytest.raises(DownloadError) as exc_info:
            cache.resolve("7.3.4", H)
        assert exc_info.value.url == URL
        assert not cache.path_for("7.3.4").exists()
        assert not list(cache.cache_root.glob("*.partial"))

    def test_corrupt_download_raises_integrity_error(self, tmp_path: Path):
        transport = FakeTransport({URL: b"tampered"})
        cache = PackageCache(tmp_path / "cache", ARTIFACT, transport)
        with pytest.raises(IntegrityError):
            cache.resolve("7.3.4", H)
        assert not cache.path_for("7.3.4").exists()
        assert not sidecar_path(cache.path_for("7.3.4")).exists()

    def test_versions_are_independent(self, cache: PackageCache, transport: FakeTransport):
        other = ARTIFACT.url("7.4.0")
        transport.payloads[other] = b"7.4.0"
        cache.resolve("7.3.4", H)
        cache.resolve("7.4.0", sha256_hex(b"7.4.0"))
        assert transport.calls == [URL, other]

    def test_invalidate(self, cache: PackageCache):
        path = cache.resolve("7.3.4", H)
        cache.invalidate("7.3.4")
        assert not path.exists()
        assert not sidecar_path(path).exists()


class TestConcurrentResolve:
    def test_concurrent_sessions_download_once(self, tmp_path: Path):
        transport = FakeTransport({URL: PAYLOAD}, delay=0.2)
        results = []
        errors = []

        def session():
            cache = PackageCache(tmp_path / "cache", ARTIFACT, transport, lock_timeout=10)
            try:
                results.append(cache.resolve("7.3.4", H))
            except Exception as e:  # pragma: no cover - surfaced by assert below
                errors.append(e)

        threads = [threading.Thread(target=session) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == 4
        assert transport.calls == [URL]


def test_close_closes_transport(cache: PackageCache, transport: FakeTransport):
    cache.close()
    assert transport.closed
