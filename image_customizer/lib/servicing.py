"""Image-servicing and offline-hive collaborators.

The workflow only depends on the ``ImageServicer`` and ``HiveEditor``
protocols. ``DismServicer`` and ``RegHiveEditor`` implement them on a Windows
host by shelling out to ``dism.exe`` and ``reg.exe``; they are the one place
where tool output is turned into typed errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Tuple, Type

from ..errors import (
    CustomizerError,
    DismountError,
    MountError,
    TransientDismountError,
    TransientIOError,
    TransientMountError,
)
from .command import CommandFailed, run_cmd

logger = logging.getLogger(__name__)


class ImageServicer(Protocol):
    def mount(self, image_path: str, index: int, mount_path: str) -> None:
        ...

    def dismount(self, mount_path: str, commit: bool) -> None:
        ...

    def force_dismount(self, mount_path: str) -> None:
        ...


@dataclass(frozen=True)
class RegistryValue:
    name: str
    data: str
    kind: str = "REG_SZ"


class HiveEditor(Protocol):
    def load_hive(self, hive_path: str, handle: str) -> None:
        ...

    def edit(self, handle: str, key_path: str, value: RegistryValue) -> None:
        ...

    def unload_hive(self, handle: str) -> None:
        ...


# Known transient phrases from dism.exe / reg.exe output. Not exhaustive;
# unknown messages are treated as fatal.
TRANSIENT_PHRASES: Tuple[Tuple[str, str], ...] = (
    ("being used by another process", "file_in_use"),
    ("file in use", "file_in_use"),
    ("sharing violation", "sharing_violation"),
    ("access is denied", "access_denied"),
    ("access denied", "access_denied"),
    ("device is not ready", "device_not_ready"),
    ("device not ready", "device_not_ready"),
)


def transient_reason(message: str) -> Optional[str]:
    lowered = message.lower()
    for phrase, reason in TRANSIENT_PHRASES:
        if phrase in lowered:
            return reason
    return None


def classify_failure(
    message: str,
    *,
    fatal: Type[CustomizerError],
    transient: Type[TransientIOError],
) -> CustomizerError:
    reason = transient_reason(message)
    if reason is not None:
        return transient(message, reason=reason)
    return fatal(message)


class DismServicer:
    def __init__(
        self,
        *,
        dism: str = "dism.exe",
        mount_timeout: float = 600.0,
        dismount_timeout: float = 600.0,
        dry_run: bool = False,
    ) -> None:
        self.dism = dism
        self.mount_timeout = mount_timeout
        self.dismount_timeout = dismount_timeout
        self.dry_run = dry_run

    def mount(self, image_path: str, index: int, mount_path: str) -> None:
        if not self.dry_run and not Path(image_path).is_file():
            raise MountError(f"Image not found: {image_path}")
        Path(mount_path).mkdir(parents=True, exist_ok=True)
        try:
            run_cmd(
                [
                    self.dism,
                    "/Mount-Image",
                    f"/ImageFile:{image_path}",
                    f"/Index:{index}",
                    f"/MountDir:{mount_path}",
                ],
                timeout=self.mount_timeout,
                stage="mount",
                dry_run=self.dry_run,
            )
        except CommandFailed as e:
            raise classify_failure(
                e.result.output, fatal=MountError, transient=TransientMountError
            ) from e

    def dismount(self, mount_path: str, commit: bool) -> None:
        try:
            run_cmd(
                [
                    self.dism,
                    "/Unmount-Image",
                    f"/MountDir:{mount_path}",
                    "/Commit" if commit else "/Discard",
                ],
                timeout=self.dismount_timeout,
                stage="dismount",
                dry_run=self.dry_run,
            )
        except CommandFailed as e:
            raise classify_failure(
                e.result.output, fatal=DismountError, transient=TransientDismountError
            ) from e

    def force_dismount(self, mount_path: str) -> None:
        """Discard whatever is mounted at ``mount_path`` and clean up stale mount points."""
        r = run_cmd(
            [self.dism, "/Unmount-Image", f"/MountDir:{mount_path}", "/Discard"],
            check=False,
            timeout=self.dismount_timeout,
            stage="force-dismount",
            dry_run=self.dry_run,
        )
        if r.returncode != 0:
            logger.warning("Discard of %s failed during forced dismount: %s", mount_path, r.output)
        try:
            run_cmd(
                [self.dism, "/Cleanup-Mountpoints"],
                timeout=self.dismount_timeout,
                stage="force-dismount",
                dry_run=self.dry_run,
            )
        except CommandFailed as e:
            raise DismountError(f"Forced dismount of {mount_path} failed: {e.result.output}") from e


class RegHiveEditor:
    def __init__(self, *, reg: str = "reg.exe", timeout: float = 120.0, dry_run: bool = False) -> None:
        self.reg = reg
        self.timeout = timeout
        self.dry_run = dry_run

    def _run(self, argv: list[str], stage: str) -> None:
        try:
            run_cmd([self.reg, *argv], timeout=self.timeout, stage=stage, dry_run=self.dry_run)
        except CommandFailed as e:
            raise classify_failure(
                e.result.output, fatal=CustomizerError, transient=TransientIOError
            ) from e

    def load_hive(self, hive_path: str, handle: str) -> None:
        self._run(["load", f"HKLM\\{handle}", hive_path], "hive-load")

    def edit(self, handle: str, key_path: str, value: RegistryValue) -> None:
        self._run(
            [
                "add",
                f"HKLM\\{handle}\\{key_path}",
                "/v",
                value.name,
                "/t",
                value.kind,
                "/d",
                value.data,
                "/f",
            ],
            "hive-edit",
        )

    def unload_hive(self, handle: str) -> None:
        self._run(["unload", f"HKLM\\{handle}"], "hive-unload")
