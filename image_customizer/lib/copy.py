from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set

from ..errors import OperationFailed, TransientIOError
from .retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)

CopyFn = Callable[[str, str], object]

# Sharing violations on Windows surface as PermissionError.
TRANSIENT_COPY_ERRORS = (
    PermissionError,
    BlockingIOError,
    InterruptedError,
    TimeoutError,
    TransientIOError,
)


@dataclass(frozen=True)
class CopyJob:
    source: str
    destination: str


def copy_policy(retries: int, base_delay: float) -> RetryPolicy:
    return RetryPolicy(
        max_retries=retries,
        base_delay=base_delay,
        growth_factor=2.0,
        jitter=0.0,
        max_delay=max(base_delay, 10.0),
        transient=TRANSIENT_COPY_ERRORS,
    )


def chunked(jobs: Sequence[CopyJob], parts: int) -> List[List[CopyJob]]:
    """Split jobs into at most ``parts`` contiguous, near-equal chunks."""
    parts = max(1, min(parts, len(jobs)))
    size, extra = divmod(len(jobs), parts)
    out: List[List[CopyJob]] = []
    start = 0
    for i in range(parts):
        end = start + size + (1 if i < extra else 0)
        if end > start:
            out.append(list(jobs[start:end]))
        start = end
    return out


def _copy_one(
    job: CopyJob,
    *,
    known_dirs: Set[str],
    executor: RetryExecutor,
    policy: RetryPolicy,
    copy_fn: CopyFn,
) -> Optional[str]:
    def attempt() -> str:
        parent = str(Path(job.destination).parent)
        if parent not in known_dirs:
            Path(parent).mkdir(parents=True, exist_ok=True)
            known_dirs.add(parent)
        copy_fn(job.source, job.destination)
        return job.destination

    try:
        return executor.run(f"copy {job.source}", attempt, policy)
    except OperationFailed as e:
        logger.error("Copy failed %s -> %s: %s", job.source, job.destination, e.error)
        return None


def _copy_chunk(
    jobs: List[CopyJob], retries: int, base_delay: float, copy_fn: CopyFn = shutil.copy2
) -> List[str]:
    """Process-pool worker: copy a contiguous chunk, return succeeded destinations."""
    executor = RetryExecutor()
    policy = copy_policy(retries, base_delay)
    known_dirs: Set[str] = set()
    done: List[str] = []
    for job in jobs:
        dst = _copy_one(job, known_dirs=known_dirs, executor=executor, policy=policy, copy_fn=copy_fn)
        if dst is not None:
            done.append(dst)
    return done


class ParallelCopyEngine:
    """Copies file trees with a bounded worker pool.

    Individual file failures never raise: they are logged and left out of the
    returned list. Callers that need every file compare the result length
    with ``len(enumerate(...))``. Result order is not meaningful.
    """

    def __init__(
        self,
        max_workers: int = 4,
        *,
        retries: int = 3,
        base_delay: float = 0.5,
        use_processes: bool = False,
        copy_fn: CopyFn = shutil.copy2,
        executor: Optional[RetryExecutor] = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self.retries = retries
        self.base_delay = base_delay
        self.use_processes = use_processes
        self.copy_fn = copy_fn
        self.executor = executor or RetryExecutor()
        self._local = threading.local()

    def enumerate(self, source: str | Path, destination: str | Path) -> List[CopyJob]:
        s = Path(source)
        d = Path(destination)
        if not s.is_dir():
            raise FileNotFoundError(str(s))
        return [
            CopyJob(source=str(item), destination=str(d / item.relative_to(s)))
            for item in sorted(s.rglob("*"))
            if item.is_file()
        ]

    def copy_tree(self, source: str | Path, destination: str | Path) -> List[str]:
        jobs = self.enumerate(source, destination)
        Path(destination).mkdir(parents=True, exist_ok=True)
        logger.info(
            "Copying %d files %s -> %s (workers=%d, mode=%s)",
            len(jobs), source, destination, self.max_workers,
            "processes" if self.use_processes else "threads",
        )
        return self.copy_files(jobs)

    def copy_files(self, jobs: Sequence[CopyJob]) -> List[str]:
        if not jobs:
            return []
        if self.use_processes:
            copied = self._run_chunks(jobs)
        else:
            copied = self._run_threads(jobs)

        failed = len(jobs) - len(copied)
        if failed:
            logger.warning("Copied %d of %d files (%d failed)", len(copied), len(jobs), failed)
        else:
            logger.info("Copied %d files", len(copied))
        return copied

    def _worker_dirs(self) -> Set[str]:
        dirs = getattr(self._local, "dirs", None)
        if dirs is None:
            dirs = self._local.dirs = set()
        return dirs

    def _thread_task(self, job: CopyJob, policy: RetryPolicy) -> Optional[str]:
        return _copy_one(
            job,
            known_dirs=self._worker_dirs(),
            executor=self.executor,
            policy=policy,
            copy_fn=self.copy_fn,
        )

    def _run_threads(self, jobs: Sequence[CopyJob]) -> List[str]:
        policy = copy_policy(self.retries, self.base_delay)
        copied: List[str] = []
        lock = threading.Lock()
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="copy") as pool:
            futures = [pool.submit(self._thread_task, job, policy) for job in jobs]
            for fut in as_completed(futures):
                dst = fut.result()
                if dst is not None:
                    with lock:
                        copied.append(dst)
        return copied

    def _run_chunks(self, jobs: Sequence[CopyJob], pool: Optional[Executor] = None) -> List[str]:
        chunks = chunked(jobs, self.max_workers)
        copied: List[str] = []
        owned = pool is None
        pool = pool or ProcessPoolExecutor(max_workers=len(chunks))
        stranded: List[CopyJob] = []
        try:
            futures = {
                pool.submit(_copy_chunk, chunk, self.retries, self.base_delay, self.copy_fn): chunk
                for chunk in chunks
            }
            for fut in as_completed(futures):
                try:
                    copied.extend(fut.result())
                except Exception as e:
                    # Unpicklable copy_fn or a dead worker (BrokenProcessPool).
                    logger.warning(
                        "Copy chunk of %d files failed in a worker process (%s: %s); "
                        "copying it in threads",
                        len(futures[fut]), type(e).__name__, e,
                    )
                    stranded.extend(futures[fut])
        finally:
            if owned:
                pool.shutdown(wait=True)
        if stranded:
            copied.extend(self._run_threads(stranded))
        return copied
