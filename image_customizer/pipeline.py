from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from .config import CustomizerConfig
from .lib.copy import ParallelCopyEngine
from .lib.locks import CriticalSectionManager
from .lib.retry import RetryExecutor, RetryPolicy
from .lib.servicing import HiveEditor
from .workarea import WorkArea

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """Everything a modification step may touch while the image is mounted."""

    cfg: CustomizerConfig
    work_area: WorkArea
    runtime_path: Path
    locks: CriticalSectionManager
    copier: ParallelCopyEngine
    hive_editor: Optional[HiveEditor] = None
    copied: List[str] = field(default_factory=list)
    ran_steps: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def instance_id(self) -> str:
        return self.work_area.instance_id

    @property
    def mount_dir(self) -> Path:
        return self.work_area.mount_dir


class Step(Protocol):
    """A single modification step. Must be safe to re-run after a transient failure."""

    step_id: str

    def run(self, ctx: StepContext) -> None:
        ...


def run_steps(
    *,
    ctx: StepContext,
    steps: Sequence[Step],
    executor: RetryExecutor,
    policy: RetryPolicy,
) -> None:
    """Run steps in order, each independently under the retry policy."""

    for step in steps:
        logger.info("[%s] Running step %s", ctx.instance_id, step.step_id)
        executor.run(step.step_id, lambda s=step: s.run(ctx), policy)
        ctx.ran_steps.append(step.step_id)
