"""Host-wide named critical sections.

A section is an OS file lock on ``<lock_dir>/<name>.lock``. The lock belongs
to the open file, so two threads of one process contend just like two
processes do. The lock file itself is never deleted; removing it while
another process waits on it would let two holders in.
"""

from __future__ import annotations

import contextlib
import logging
import re
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Generator, Optional

from ..errors import LockTimeout

logger = logging.getLogger(__name__)


# Cross-platform non-blocking file locking
if sys.platform == "win32":
    import msvcrt

    def _try_lock(f: IO) -> bool:
        try:
            f.seek(0)
            msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, 1)
            return True
        except OSError:
            return False

    def _unlock(f: IO) -> None:
        f.seek(0)
        msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)
else:
    import fcntl

    def _try_lock(f: IO) -> bool:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            return False

    def _unlock(f: IO) -> None:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def lock_file_name(name: str) -> str:
    """Map a section name (``Global\\Foo`` style allowed) to a lock file name."""
    cleaned = _UNSAFE.sub("_", name).strip("._")
    if not cleaned:
        raise ValueError(f"invalid critical section name: {name!r}")
    return f"{cleaned}.lock"


@dataclass
class CriticalSection:
    name: str
    path: Path
    timeout: float
    poll_interval: float
    acquired_at: float
    _handle: Optional[IO] = field(default=None, repr=False)
    released: bool = False

    @property
    def held_for(self) -> float:
        return time.monotonic() - self.acquired_at


class CriticalSectionManager:
    def __init__(
        self,
        lock_dir: str | Path,
        *,
        poll_interval: float = 2.0,
        progress_interval: float = 30.0,
        default_timeout: float = 600.0,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.poll_interval = poll_interval
        self.progress_interval = progress_interval
        self.default_timeout = default_timeout
        self._release_guard = threading.Lock()

    def path_for(self, name: str) -> Path:
        return self.lock_dir / lock_file_name(name)

    def enter(self, name: str, timeout: Optional[float] = None) -> CriticalSection:
        timeout = self.default_timeout if timeout is None else timeout
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)

        f = open(path, "a+b")
        started = time.monotonic()
        deadline = started + timeout
        next_progress = started + self.progress_interval
        try:
            while not _try_lock(f):
                now = time.monotonic()
                if now >= deadline:
                    logger.error("Critical section %s not acquired within %.1fs", name, timeout)
                    raise LockTimeout(name, timeout)
                if now >= next_progress:
                    logger.info(
                        "Still waiting for critical section %s (%.0fs of %.0fs)",
                        name, now - started, timeout,
                    )
                    next_progress = now + self.progress_interval
                time.sleep(max(0.0, min(self.poll_interval, deadline - now)))
        except BaseException:
            f.close()
            raise

        waited = time.monotonic() - started
        logger.debug("Entered critical section %s after %.2fs", name, waited)
        return CriticalSection(
            name=name,
            path=path,
            timeout=timeout,
            poll_interval=self.poll_interval,
            acquired_at=time.monotonic(),
            _handle=f,
        )

    def exit(self, section: CriticalSection) -> None:
        """Release a section. Never raises; a second exit is a no-op."""
        with self._release_guard:
            if section.released:
                logger.debug("Critical section %s already released", section.name)
                return
            section.released = True
            handle, section._handle = section._handle, None

        if handle is None:
            return
        try:
            _unlock(handle)
        except OSError as e:
            logger.warning("Unlock of critical section %s failed: %s", section.name, e)
        finally:
            try:
                handle.close()
            except OSError as e:
                logger.warning("Closing lock file %s failed: %s", section.path, e)
        logger.debug("Left critical section %s after %.2fs", section.name, section.held_for)

    @contextlib.contextmanager
    def critical_section(
        self, name: str, timeout: Optional[float] = None
    ) -> Generator[CriticalSection, None, None]:
        section = self.enter(name, timeout)
        try:
            yield section
        finally:
            self.exit(section)
