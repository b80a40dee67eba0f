"""Offline image customizer (mount, inject, commit or discard).

Core design goals:
- Every run gets a private work area and instance id
- One session at a time touches the image-servicing facility (host-wide lock)
- Transient servicing and file-system failures are retried with backoff
- Runtime packages are cached and hash-verified
- Teardown always runs; failed runs discard their changes
"""

__all__ = []
