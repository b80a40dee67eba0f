from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml

from .errors import ConfigError

DEFAULT_RUNTIME_URL = (
    "https://github.com/PowerShell/PowerShell/releases/download/"
    "v{version}/PowerShell-{version}-win-x64.zip"
)


@dataclass(frozen=True)
class CustomizerConfig:
    raw: Dict[str, Any] = field(default_factory=dict)

    def _section(self, name: str) -> Dict[str, Any]:
        value = self.raw.get(name) or {}
        if not isinstance(value, dict):
            raise ConfigError(f"config section {name!r} must be a mapping")
        return value

    def _number(self, section: str, key: str, default: float) -> float:
        value = self._section(section).get(key)
        if value is None:
            return float(default)
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{section}.{key} must be a number, got {value!r}") from e

    # paths

    @property
    def work_root(self) -> str:
        return str(self._section("paths").get("work_root") or "build/work")

    @property
    def cache_dir(self) -> str:
        return str(self._section("paths").get("cache") or "build/cache")

    @property
    def locks_dir(self) -> str:
        return str(self._section("paths").get("locks") or "build/locks")

    @property
    def logs_dir(self) -> str:
        return str(self._section("paths").get("logs") or "logs")

    # timeouts (seconds)

    @property
    def mount_timeout(self) -> float:
        return self._number("timeouts", "mount", 600)

    @property
    def dismount_timeout(self) -> float:
        return self._number("timeouts", "dismount", 600)

    @property
    def download_timeout(self) -> float:
        return self._number("timeouts", "download", 300)

    @property
    def lock_timeout(self) -> float:
        return self._number("timeouts", "lock", 600)

    # retry

    @property
    def max_retries(self) -> int:
        return int(self._number("retry", "max_retries", 3))

    @property
    def base_delay(self) -> float:
        return self._number("retry", "base_delay", 2.0)

    @property
    def growth_factor(self) -> float:
        return self._number("retry", "growth_factor", 2.0)

    @property
    def jitter(self) -> float:
        return self._number("retry", "jitter", 0.5)

    @property
    def max_delay(self) -> float:
        return self._number("retry", "max_delay", 60.0)

    # copy

    @property
    def copy_max_workers(self) -> int:
        return max(1, int(self._number("copy", "max_workers", min(8, os.cpu_count() or 1))))

    @property
    def copy_retries(self) -> int:
        return int(self._number("copy", "retries", 3))

    @property
    def copy_use_processes(self) -> bool:
        return bool(self._section("copy").get("use_processes", False))

    # critical sections

    @property
    def lock_poll_interval(self) -> float:
        return self._number("locks", "poll_interval", 2.0)

    def lock_name(self, purpose: str) -> str:
        defaults = {
            "servicing": "image-customizer-servicing",
            "work_root": "image-customizer-work-root",
            "startup_script": "image-customizer-startup-script",
            "registry_hive": "image-customizer-registry-hive",
        }
        return str(self._section("locks").get(purpose) or defaults[purpose])

    # injected runtime

    @property
    def runtime_name(self) -> str:
        return str(self._section("runtime").get("name") or "PowerShell")

    @property
    def runtime_extension(self) -> str:
        return str(self._section("runtime").get("extension") or "zip")

    @property
    def runtime_url_template(self) -> str:
        return str(self._section("runtime").get("url_template") or DEFAULT_RUNTIME_URL)

    @property
    def runtime_version(self) -> str | None:
        v = self._section("runtime").get("version")
        return str(v) if v else None

    @property
    def runtime_sha256(self) -> str | None:
        v = self._section("runtime").get("sha256")
        return str(v) if v else None

    @property
    def runtime_install_dir(self) -> str:
        return str(self._section("runtime").get("install_dir") or "Program Files/PowerShell/7")

    # offline edits

    @property
    def startup_commands(self) -> List[str]:
        cmds = self._section("startup").get("commands")
        if cmds is None:
            return []
        if not isinstance(cmds, list):
            raise ConfigError("startup.commands must be a list")
        return [str(c) for c in cmds]

    @property
    def registry_hive(self) -> str:
        return str(self._section("registry").get("hive") or "Windows/System32/config/SYSTEM")

    @property
    def registry_values(self) -> List[Dict[str, Any]]:
        values = self._section("registry").get("values")
        if values is None:
            return []
        if not isinstance(values, list) or not all(isinstance(v, dict) for v in values):
            raise ConfigError("registry.values must be a list of mappings")
        return list(values)

    @property
    def extra_files(self) -> List[Dict[str, str]]:
        files = self.raw.get("extra_files")
        if files is None:
            return []
        if (
            not isinstance(files, list)
            or not all(isinstance(f, dict) for f in files)
            or not all(f.get("source") and f.get("destination") for f in files)
        ):
            raise ConfigError("extra_files must be a list of {source, destination} mappings")
        return [{"source": str(f["source"]), "destination": str(f["destination"])} for f in files]

    @property
    def keep_work_area(self) -> bool:
        return bool(self.raw.get("keep_work_area", False))


def config_from_mapping(raw: Mapping[str, Any] | None) -> CustomizerConfig:
    if raw is None:
        return CustomizerConfig(raw={})
    if not isinstance(raw, Mapping):
        raise ConfigError("configuration must be a mapping/object")
    return CustomizerConfig(raw=dict(raw))


def load_config(path: str) -> CustomizerConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigError("customizer config must be YAML")

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping/object")

    return config_from_mapping(raw)
