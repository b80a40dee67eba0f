from __future__ import annotations

from typing import Any


class CustomizerError(Exception):
    """Base class for every error raised by image_customizer."""


class ConfigError(CustomizerError, ValueError):
    pass


class TransientIOError(CustomizerError):
    """A failure that is expected to clear up on its own (file in use, device not ready)."""

    def __init__(self, message: str, *, reason: str = "transient") -> None:
        super().__init__(message)
        self.reason = reason


class IntegrityError(CustomizerError):
    def __init__(self, path: str, expected: str, actual: str) -> None:
        super().__init__(f"Hash mismatch for {path}: expected {expected}, got {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class LockTimeout(CustomizerError):
    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:.1f}s waiting for critical section {name!r}")
        self.name = name
        self.timeout = timeout


class StageTimeout(CustomizerError):
    def __init__(self, stage: str, timeout: float) -> None:
        super().__init__(f"Stage {stage!r} exceeded its {timeout:.1f}s timeout")
        self.stage = stage
        self.timeout = timeout


class MountError(CustomizerError):
    pass


class TransientMountError(MountError, TransientIOError):
    def __init__(self, message: str, *, reason: str = "transient") -> None:
        TransientIOError.__init__(self, message, reason=reason)


class DismountError(CustomizerError):
    pass


class TransientDismountError(DismountError, TransientIOError):
    def __init__(self, message: str, *, reason: str = "transient") -> None:
        TransientIOError.__init__(self, message, reason=reason)


class TransportError(CustomizerError):
    pass


class DownloadError(CustomizerError):
    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"Download of {url} failed: {message}")
        self.url = url


class CopyIncomplete(CustomizerError):
    """Raised by callers that need all-or-nothing copy semantics."""

    def __init__(self, expected: int, copied: list[str]) -> None:
        super().__init__(f"Copied {len(copied)} of {expected} files")
        self.expected = expected
        self.copied = copied


class OperationFailed(CustomizerError):
    """An operation run by the RetryExecutor failed for good.

    The underlying error is kept both as ``error`` and as ``__cause__``.
    """

    def __init__(
        self,
        operation: str,
        error: BaseException,
        *,
        attempts: int,
        elapsed_delay: float,
    ) -> None:
        msg = (
            f"{type(self).__name__}: operation {operation!r} failed after "
            f"{attempts} attempt(s), {elapsed_delay:.1f}s of backoff: {error}"
        )
        super().__init__(msg)
        self.operation = operation
        self.error = error
        self.attempts = attempts
        self.elapsed_delay = elapsed_delay

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "operation": self.operation,
            "attempts": self.attempts,
            "elapsed_delay": round(self.elapsed_delay, 3),
            "cause": f"{type(self.error).__name__}: {self.error}",
        }


class Exhausted(OperationFailed):
    """Every retry was spent on transient failures."""


class Fatal(OperationFailed):
    """The operation failed with an error that is not worth retrying."""
