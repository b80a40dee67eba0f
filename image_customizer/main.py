from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .config import CustomizerConfig, config_from_mapping, load_config
from .lib.cache import Artifact, PackageCache
from .lib.locks import CriticalSectionManager
from .lib.retry import RetryExecutor
from .lib.servicing import DismServicer, RegHiveEditor
from .lib.transport import HttpTransport
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .session_store import save_report
from .workflow import CustomizationSession, ImageCustomizationWorkflow

logger = logging.getLogger(__name__)


def build_workflow(cfg: CustomizerConfig, *, dry_run: bool = False) -> ImageCustomizationWorkflow:
    """Wire the workflow with the host collaborators (dism.exe, reg.exe, https)."""
    locks = CriticalSectionManager(
        cfg.locks_dir,
        poll_interval=cfg.lock_poll_interval,
        default_timeout=cfg.lock_timeout,
    )
    cache = PackageCache(
        cfg.cache_dir,
        Artifact(cfg.runtime_name, cfg.runtime_extension, cfg.runtime_url_template),
        HttpTransport(timeout=cfg.download_timeout),
        lock_timeout=cfg.download_timeout + cfg.lock_timeout,
    )
    return ImageCustomizationWorkflow(
        cfg=cfg,
        servicer=DismServicer(
            mount_timeout=cfg.mount_timeout,
            dismount_timeout=cfg.dismount_timeout,
            dry_run=dry_run,
        ),
        locks=locks,
        executor=RetryExecutor(),
        cache=cache,
        hive_editor=RegHiveEditor(dry_run=dry_run),
        dry_run=dry_run,
    )


def run(
    *,
    config_path: Optional[str],
    image: str,
    index: int = 1,
    runtime_version: Optional[str] = None,
    runtime_sha256: Optional[str] = None,
    runtime_package: Optional[str] = None,
    log_path: Optional[str] = None,
    report_path: Optional[str] = None,
    keep_work_area: bool = False,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Customize one image and return the session report.

    Without ``log_path`` the log goes to ``image-customizer.log`` under the
    configured ``paths.logs`` directory.
    """

    cfg = load_config(config_path) if config_path else config_from_mapping(None)
    configure_logging(log_path=log_path or str(Path(cfg.logs_dir) / Path(DEFAULT_LOG_PATH).name))
    workflow = build_workflow(cfg, dry_run=dry_run)

    session: Optional[CustomizationSession] = None
    try:
        session = workflow.run(
            image,
            index=index,
            runtime_version=runtime_version,
            runtime_sha256=runtime_sha256,
            runtime_package=runtime_package,
            keep_work_area=keep_work_area or None,
        )
        return session.report()
    except Exception as e:
        logger.exception("Image customization failed")
        session = getattr(e, "session", None)
        raise
    finally:
        workflow.close()
        if report_path and session is not None:
            save_report(report_path, session.report())


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="image-customizer")
    p.add_argument("--config", default=None, help="Path to YAML configuration")
    p.add_argument("--image", required=True, help="Path to the offline image (e.g. boot.wim)")
    p.add_argument("--index", type=int, default=1, help="Image index to mount")
    p.add_argument("--runtime-version", default=None, help="Runtime version to inject (e.g. 7.3.4)")
    p.add_argument("--runtime-sha256", default=None, help="Expected SHA-256 of the runtime package")
    p.add_argument("--runtime-package", default=None, help="Local runtime package; skips the cache")
    p.add_argument("--log", default=None, help="Path to log file (default: <paths.logs>/image-customizer.log)")
    p.add_argument("--report", default=None, help="Write a session report (json|yaml)")
    p.add_argument("--keep-work-area", action="store_true", help="Keep scratch files for diagnostics")
    p.add_argument("--dry-run", action="store_true", help="Log servicing commands without running them")

    args = p.parse_args(argv)

    if args.runtime_package and not Path(args.runtime_package).exists():
        p.error(f"runtime package not found: {args.runtime_package}")

    try:
        run(
            config_path=args.config,
            image=args.image,
            index=args.index,
            runtime_version=args.runtime_version,
            runtime_sha256=args.runtime_sha256,
            runtime_package=args.runtime_package,
            log_path=args.log,
            report_path=args.report,
            keep_work_area=bool(args.keep_work_area),
            dry_run=bool(args.dry_run),
        )
    except Exception:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
