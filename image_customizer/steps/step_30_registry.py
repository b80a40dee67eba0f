from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from ..errors import ConfigError, CustomizerError
from ..lib.servicing import RegistryValue
from ..pipeline import StepContext

logger = logging.getLogger(__name__)

ENVIRONMENT_KEY = r"ControlSet001\Control\Session Manager\Environment"

DEFAULT_VALUES: List[Dict[str, Any]] = [
    {"key": ENVIRONMENT_KEY, "name": "POWERSHELL_TELEMETRY_OPTOUT", "data": "1"},
]


def parse_values(raw: List[Dict[str, Any]]) -> List[Tuple[str, RegistryValue]]:
    out: List[Tuple[str, RegistryValue]] = []
    for item in raw:
        try:
            key = str(item["key"])
            value = RegistryValue(
                name=str(item["name"]),
                data=str(item.get("data", "")),
                kind=str(item.get("type", "REG_SZ")),
            )
        except KeyError as e:
            raise ConfigError(f"registry value is missing {e.args[0]!r}: {item!r}") from e
        out.append((key, value))
    return out


class RegistryStep:
    step_id = "30_registry"

    def run(self, ctx: StepContext) -> None:
        if ctx.hive_editor is None:
            logger.info("[%s] No hive editor configured; skipping registry edits", ctx.instance_id)
            return

        edits = parse_values(ctx.cfg.registry_values or DEFAULT_VALUES)
        hive = ctx.mount_dir / ctx.cfg.registry_hive
        # A dry-run mount lays down no image tree; the reg.exe calls are only logged.
        if not hive.is_file() and not ctx.dry_run:
            raise CustomizerError(f"Offline hive not found: {hive}")

        handle = f"IC_{ctx.instance_id}"
        editor = ctx.hive_editor

        # The host has a single set of hive load slots shared by every session.
        with ctx.locks.critical_section(ctx.cfg.lock_name("registry_hive"), ctx.cfg.lock_timeout):
            editor.load_hive(str(hive), handle)
            try:
                for key, value in edits:
                    editor.edit(handle, key, value)
                    logger.info("[%s] Set %s\\%s", ctx.instance_id, key, value.name)
            except BaseException:
                try:
                    editor.unload_hive(handle)
                except Exception as unload_error:
                    logger.error(
                        "[%s] Unloading hive %s after a failed edit also failed: %s",
                        ctx.instance_id, handle, unload_error,
                    )
                raise
            editor.unload_hive(handle)
