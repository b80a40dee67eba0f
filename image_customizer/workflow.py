"""Mount, modify, then commit or discard an offline image.

Phases::

    created -> work_area_ready -> runtime_resolved -> mounted -> modified
            -> committed | discarded -> cleaned_up

Any failure jumps to ``discarded``. Teardown (discard dismount, forced
dismount, work area removal) runs on every path, and the original error is
re-raised afterwards with the session attached as ``error.session``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .config import CustomizerConfig
from .errors import CustomizerError, OperationFailed, TransientIOError
from .lib.cache import PackageCache
from .lib.copy import ParallelCopyEngine
from .lib.locks import CriticalSectionManager
from .lib.retry import RetryExecutor, RetryPolicy, policy_from_config
from .lib.servicing import HiveEditor, ImageServicer
from .pipeline import Step, StepContext, run_steps
from .steps import InjectRuntimeStep, RegistryStep, StartupScriptStep
from .workarea import WorkArea, new_instance_id

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    CREATED = "created"
    WORK_AREA_READY = "work_area_ready"
    RUNTIME_RESOLVED = "runtime_resolved"
    MOUNTED = "mounted"
    MODIFIED = "modified"
    COMMITTED = "committed"
    DISCARDED = "discarded"
    CLEANED_UP = "cleaned_up"


@dataclass
class CustomizationSession:
    image_path: str
    index: int = 1
    instance_id: str = field(default_factory=new_instance_id)
    phase: Phase = Phase.CREATED
    history: List[Phase] = field(default_factory=lambda: [Phase.CREATED])
    work_area: Optional[WorkArea] = None
    runtime_path: Optional[Path] = None
    mount_attempted: bool = False
    copied: List[str] = field(default_factory=list)
    ran_steps: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None

    def advance(self, phase: Phase) -> None:
        logger.info("[%s] %s -> %s", self.instance_id, self.phase.value, phase.value)
        self.phase = phase
        self.history.append(phase)

    @property
    def committed(self) -> bool:
        return Phase.COMMITTED in self.history

    def report(self) -> Dict[str, Any]:
        err: Optional[Dict[str, Any]] = None
        if isinstance(self.error, OperationFailed):
            err = self.error.to_dict()
        elif self.error is not None:
            err = {"type": type(self.error).__name__, "message": str(self.error)}
        return {
            "instance_id": self.instance_id,
            "image_path": self.image_path,
            "index": self.index,
            "phase": self.phase.value,
            "history": [p.value for p in self.history],
            "committed": self.committed,
            "work_area": str(self.work_area.root) if self.work_area else None,
            "runtime_path": str(self.runtime_path) if self.runtime_path else None,
            "copied_files": len(set(self.copied)),
            "ran_steps": list(self.ran_steps),
            "diagnostics": list(self.diagnostics),
            "error": err,
        }


class ImageCustomizationWorkflow:
    def __init__(
        self,
        *,
        cfg: CustomizerConfig,
        servicer: ImageServicer,
        locks: CriticalSectionManager,
        executor: Optional[RetryExecutor] = None,
        cache: Optional[PackageCache] = None,
        copier: Optional[ParallelCopyEngine] = None,
        hive_editor: Optional[HiveEditor] = None,
        steps: Optional[Sequence[Step]] = None,
        dry_run: bool = False,
    ) -> None:
        self.cfg = cfg
        self.servicer = servicer
        self.locks = locks
        self.executor = executor or RetryExecutor()
        self.cache = cache
        self.copier = copier or ParallelCopyEngine(
            cfg.copy_max_workers,
            retries=cfg.copy_retries,
            use_processes=cfg.copy_use_processes,
            executor=self.executor,
        )
        self.hive_editor = hive_editor
        self.steps: Sequence[Step] = (
            list(steps) if steps is not None
            else [InjectRuntimeStep(), StartupScriptStep(), RegistryStep()]
        )
        self.dry_run = dry_run

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()

    @property
    def policy(self) -> RetryPolicy:
        return policy_from_config(self.cfg, transient=(TransientIOError,))

    def run(
        self,
        image_path: str,
        *,
        index: int = 1,
        runtime_version: Optional[str] = None,
        runtime_sha256: Optional[str] = None,
        runtime_package: Optional[str] = None,
        keep_work_area: Optional[bool] = None,
    ) -> CustomizationSession:
        session = CustomizationSession(image_path=str(image_path), index=index)
        keep = self.cfg.keep_work_area if keep_work_area is None else keep_work_area
        logger.info("[%s] Customizing %s (index %d)", session.instance_id, image_path, index)

        try:
            self._prepare_work_area(session, keep)
            self._resolve_runtime(session, runtime_version, runtime_sha256, runtime_package)
            self._mount(session)
            self._modify(session)
            self._commit(session)
        except BaseException as e:
            session.error = e
            logger.error("[%s] Failed in phase %s: %s", session.instance_id, session.phase.value, e)
            self._discard(session)
            if isinstance(e, Exception):
                setattr(e, "session", session)
            raise
        finally:
            self._cleanup(session)

        return session

    # transitions

    def _prepare_work_area(self, session: CustomizationSession, keep: bool) -> None:
        session.work_area = WorkArea.create(
            self.cfg.work_root,
            instance_id=session.instance_id,
            locks=self.locks,
            lock_name=self.cfg.lock_name("work_root"),
            lock_timeout=self.cfg.lock_timeout,
            keep=keep,
        )
        session.advance(Phase.WORK_AREA_READY)

    def _resolve_runtime(
        self,
        session: CustomizationSession,
        version: Optional[str],
        sha256: Optional[str],
        package: Optional[str],
    ) -> None:
        if package:
            path = Path(package)
            if not path.exists():
                raise FileNotFoundError(package)
            logger.info("[%s] Using local runtime package %s", session.instance_id, path)
        else:
            version = version or self.cfg.runtime_version
            sha256 = sha256 or self.cfg.runtime_sha256
            if not (version and sha256):
                raise CustomizerError("runtime version and sha256 are required without a local package")
            if self.cache is None:
                raise CustomizerError("no package cache configured")
            path = self.cache.resolve(version, sha256)
        session.runtime_path = path
        session.advance(Phase.RUNTIME_RESOLVED)

    def _mount(self, session: CustomizationSession) -> None:
        if session.work_area is None:
            raise RuntimeError("Missing work area; prepare the work area first")
        mount_dir = str(session.work_area.mount_dir)

        def mount() -> None:
            with self.locks.critical_section(self.cfg.lock_name("servicing"), self.cfg.lock_timeout):
                self.servicer.mount(session.image_path, session.index, mount_dir)

        session.mount_attempted = True
        self.executor.run(f"mount {session.image_path}", mount, self.policy)
        session.advance(Phase.MOUNTED)

    def _modify(self, session: CustomizationSession) -> None:
        if session.work_area is None or session.runtime_path is None:
            raise RuntimeError("Missing work area/runtime package; resolve the runtime first")
        ctx = StepContext(
            cfg=self.cfg,
            work_area=session.work_area,
            runtime_path=session.runtime_path,
            locks=self.locks,
            copier=self.copier,
            hive_editor=self.hive_editor,
            copied=session.copied,
            ran_steps=session.ran_steps,
            dry_run=self.dry_run,
        )
        run_steps(ctx=ctx, steps=self.steps, executor=self.executor, policy=self.policy)
        session.advance(Phase.MODIFIED)

    def _dismount(self, session: CustomizationSession, commit: bool) -> None:
        if session.work_area is None:
            raise RuntimeError("Missing work area; prepare the work area first")
        mount_dir = str(session.work_area.mount_dir)

        def dismount() -> None:
            with self.locks.critical_section(self.cfg.lock_name("servicing"), self.cfg.lock_timeout):
                self.servicer.dismount(mount_dir, commit)

        verb = "commit" if commit else "discard"
        self.executor.run(f"dismount ({verb}) {mount_dir}", dismount, self.policy)

    def _commit(self, session: CustomizationSession) -> None:
        self._dismount(session, commit=True)
        session.mount_attempted = False
        session.advance(Phase.COMMITTED)

    def _discard(self, session: CustomizationSession) -> None:
        """Best-effort discard. Never raises; problems end up in session.diagnostics."""
        if session.mount_attempted and session.work_area is not None:
            try:
                self._dismount(session, commit=False)
            except Exception as e:
                logger.warning("[%s] Discard dismount failed, forcing: %s", session.instance_id, e)
                session.diagnostics.append(f"discard dismount failed: {e}")
                self._force_dismount(session)
            session.mount_attempted = False
        session.advance(Phase.DISCARDED)

    def _force_dismount(self, session: CustomizationSession) -> None:
        if session.work_area is None:
            raise RuntimeError("Missing work area; prepare the work area first")
        mount_dir = str(session.work_area.mount_dir)
        try:
            with self.locks.critical_section(self.cfg.lock_name("servicing"), self.cfg.lock_timeout):
                self.servicer.force_dismount(mount_dir)
        except Exception as e:
            logger.error(
                "[%s] Forced dismount of %s failed; manual cleanup required: %s",
                session.instance_id, mount_dir, e,
            )
            session.diagnostics.append(f"forced dismount failed: {e}")

    def _cleanup(self, session: CustomizationSession) -> None:
        if session.work_area is not None:
            if not session.work_area.remove():
                session.diagnostics.append(f"work area left at {session.work_area.root}")
        session.advance(Phase.CLEANED_UP)
