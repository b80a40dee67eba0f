from __future__ import annotations

import logging
import shutil
import zipfile
from pathlib import Path

from ..errors import CopyIncomplete
from ..lib.copy import CopyJob
from ..pipeline import StepContext

logger = logging.getLogger(__name__)


def stage_runtime(package: Path, staging: Path) -> Path:
    """Unpack (or copy) the runtime package into a clean staging directory."""
    target = staging / "runtime"
    if target.exists():
        shutil.rmtree(target)
    target.mkdir(parents=True)

    if package.is_dir():
        shutil.copytree(package, target, dirs_exist_ok=True)
    elif zipfile.is_zipfile(package):
        with zipfile.ZipFile(package) as zf:
            zf.extractall(target)
    else:
        shutil.copy2(package, target / package.name)
    return target


class InjectRuntimeStep:
    step_id = "10_inject_runtime"

    def run(self, ctx: StepContext) -> None:
        staged = stage_runtime(ctx.runtime_path, ctx.work_area.staging_dir)
        dest = ctx.mount_dir / ctx.cfg.runtime_install_dir

        expected = len(ctx.copier.enumerate(staged, dest))
        copied = ctx.copier.copy_tree(staged, dest)
        ctx.copied.extend(copied)
        if len(copied) != expected:
            raise CopyIncomplete(expected, copied)

        extra = [
            CopyJob(source=f["source"], destination=str(ctx.mount_dir / f["destination"].lstrip("/\\")))
            for f in ctx.cfg.extra_files
        ]
        for job in extra:
            if not Path(job.source).is_file():
                raise FileNotFoundError(job.source)
        if extra:
            done = ctx.copier.copy_files(extra)
            ctx.copied.extend(done)
            if len(done) != len(extra):
                raise CopyIncomplete(len(extra), done)

        logger.info("[%s] Runtime injected into %s", ctx.instance_id, dest)
