from __future__ import annotations

import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .lib.locks import CriticalSectionManager

logger = logging.getLogger(__name__)


def new_instance_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class WorkArea:
    """Session-private scratch tree: ``<root>/<prefix>-<instance_id>/{mount,staging}``."""

    root: Path
    instance_id: str
    keep: bool = False

    @property
    def path(self) -> Path:
        return self.root

    @property
    def mount_dir(self) -> Path:
        return self.root / "mount"

    @property
    def staging_dir(self) -> Path:
        return self.root / "staging"

    @classmethod
    def create(
        cls,
        work_root: str | Path,
        *,
        instance_id: Optional[str] = None,
        locks: Optional[CriticalSectionManager] = None,
        lock_name: str = "image-customizer-work-root",
        lock_timeout: Optional[float] = None,
        prefix: str = "session",
        keep: bool = False,
    ) -> "WorkArea":
        """Allocate a fresh work area. Raises OSError when the scratch filesystem is unwritable."""
        instance_id = instance_id or new_instance_id()
        base = Path(work_root)

        if locks is not None:
            with locks.critical_section(lock_name, lock_timeout):
                base.mkdir(parents=True, exist_ok=True)
        else:
            base.mkdir(parents=True, exist_ok=True)

        root = base / f"{prefix}-{instance_id}"
        root.mkdir(parents=False, exist_ok=False)
        area = cls(root=root, instance_id=instance_id, keep=keep)
        try:
            area.mount_dir.mkdir()
            area.staging_dir.mkdir()
        except OSError:
            shutil.rmtree(root, ignore_errors=True)
            raise
        logger.info("[%s] Work area ready at %s", instance_id, root)
        return area

    def remove(self) -> bool:
        """Delete the tree. Returns False (and logs) instead of raising."""
        if self.keep:
            logger.info("[%s] Keeping work area %s", self.instance_id, self.root)
            return False
        if not self.root.exists():
            return True
        try:
            shutil.rmtree(self.root)
        except OSError as e:
            logger.warning(
                "[%s] Could not remove work area %s: %s (safe to delete later)",
                self.instance_id, self.root, e,
            )
            return False
        logger.info("[%s] Removed work area %s", self.instance_id, self.root)
        return True
