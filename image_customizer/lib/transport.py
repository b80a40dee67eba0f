from __future__ import annotations

import logging
import ssl
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urlparse

import httpx

from ..errors import TransportError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def download(self, url: str, destination: str | Path) -> None:
        ...


def tls12_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    return ctx


class HttpTransport:
    """Streams an https URL to a local file. TLS 1.2 or newer only."""

    def __init__(self, timeout: float = 300.0, client: Optional[httpx.Client] = None) -> None:
        self.timeout = timeout
        self._http = client

    def _get_client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(
                timeout=self.timeout, verify=tls12_context(), follow_redirects=True
            )
        return self._http

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None

    def download(self, url: str, destination: str | Path) -> None:
        if urlparse(url).scheme != "https":
            raise TransportError(f"Refusing non-https download: {url}")

        dest = Path(destination)
        logger.info("Downloading %s -> %s", url, dest)
        written = 0
        try:
            with self._get_client().stream("GET", url) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
                        written += len(chunk)
        except (httpx.HTTPStatusError, httpx.RequestError) as e:
            raise TransportError(f"{url}: {e}") from e
        except OSError as e:
            raise TransportError(f"writing {dest}: {e}") from e
        logger.info("Downloaded %d bytes from %s", written, url)
