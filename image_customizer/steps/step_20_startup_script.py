from __future__ import annotations

import logging
from pathlib import PureWindowsPath
from typing import List

from ..pipeline import StepContext

logger = logging.getLogger(__name__)

STARTNET_REL = "Windows/System32/startnet.cmd"


def default_commands(install_dir: str) -> List[str]:
    win_dir = PureWindowsPath("X:/") / PureWindowsPath(install_dir)
    return [f'set "PATH=%PATH%;{win_dir}"']


def merge_commands(existing: str, commands: List[str]) -> str:
    """Append commands that are not already present. Line endings become CRLF."""
    lines = existing.splitlines()
    if not lines:
        lines = ["wpeinit"]
    present = {line.strip().lower() for line in lines}
    for cmd in commands:
        if cmd.strip().lower() not in present:
            lines.append(cmd)
            present.add(cmd.strip().lower())
    return "\r\n".join(lines) + "\r\n"


class StartupScriptStep:
    step_id = "20_startup_script"

    def run(self, ctx: StepContext) -> None:
        commands = ctx.cfg.startup_commands or default_commands(ctx.cfg.runtime_install_dir)
        script = ctx.mount_dir / STARTNET_REL

        with ctx.locks.critical_section(ctx.cfg.lock_name("startup_script"), ctx.cfg.lock_timeout):
            existing = script.read_text(encoding="utf-8", errors="replace") if script.exists() else ""
            merged = merge_commands(existing, commands)
            script.parent.mkdir(parents=True, exist_ok=True)
            with open(script, "w", encoding="utf-8", newline="") as f:
                f.write(merged)

        logger.info("[%s] Startup script updated: %s", ctx.instance_id, script)
