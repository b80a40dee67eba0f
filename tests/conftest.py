"""Shared fixtures for the image customizer tests."""

from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

from image_customizer.config import CustomizerConfig, config_from_mapping
from image_customizer.lib.locks import CriticalSectionManager
from image_customizer.lib.retry import RetryExecutor

from .fakes import RecordingSleep


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def executor(sleep: RecordingSleep) -> RetryExecutor:
    return RetryExecutor(sleep=sleep)


@pytest.fixture
def locks(tmp_path: Path) -> CriticalSectionManager:
    return CriticalSectionManager(tmp_path / "locks", poll_interval=0.02, progress_interval=0.5)


@pytest.fixture
def cfg(tmp_path: Path) -> CustomizerConfig:
    return config_from_mapping(
        {
            "paths": {
                "work_root": str(tmp_path / "work"),
                "cache": str(tmp_path / "cache"),
                "locks": str(tmp_path / "locks"),
            },
            "timeouts": {"lock": 5},
            "retry": {"max_retries": 3, "base_delay": 0.0, "jitter": 0.0},
            "copy": {"max_workers": 2, "retries": 0},
            "locks": {"poll_interval": 0.02},
        }
    )


@pytest.fixture
def runtime_zip(tmp_path: Path) -> Path:
    """A small PowerShell-like runtime package."""
    pkg = tmp_path / "PowerShell-7.3.4-win-x64.zip"
    with zipfile.ZipFile(pkg, "w") as zf:
        zf.writestr("pwsh.exe", b"MZ fake")
        zf.writestr("pwsh.dll", b"dll")
        zf.writestr("Modules/Microsoft.PowerShell.Utility/Utility.psd1", b"@{}")
    return pkg
