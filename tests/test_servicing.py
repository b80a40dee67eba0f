"""dism.exe / reg.exe adapters: argv shape and typed error translation."""

from __future__ import annotations

from pathlib import Path

import pytest

from image_customizer.errors import (
    CustomizerError,
    DismountError,
    MountError,
    TransientDismountError,
    TransientIOError,
    TransientMountError,
)
from image_customizer.lib import servicing
from image_customizer.lib.command import CmdResult, CommandFailed
from image_customizer.lib.servicing import (
    DismServicer,
    RegHiveEditor,
    RegistryValue,
    classify_failure,
    transient_reason,
)

IN_USE = "Error: 32\nThe process cannot access the file because it is being used by another process."


class FakeRunner:
    def __init__(self, failures=None):
        self.failures = dict(failures or {})
        self.calls = []

    def __call__(self, argv, **kwargs):
        self.calls.append((list(argv), kwargs))
        for marker, (code, stderr) in self.failures.items():
            if marker in argv:
                result = CmdResult(argv=list(argv), returncode=code, stdout="", stderr=stderr)
                if kwargs.get("check", True):
                    raise CommandFailed(result)
                return result
        return CmdResult(argv=list(argv), returncode=0, stdout="", stderr="")


class TestClassification:
    @pytest.mark.parametrize(
        "message,reason",
        [
            (IN_USE, "file_in_use"),
            ("Access is denied.", "access_denied"),
            ("The device is not ready.", "device_not_ready"),
            ("A sharing violation occurred", "sharing_violation"),
            ("The parameter is incorrect.", None),
        ],
    )
    def test_transient_reason(self, message, reason):
        assert transient_reason(message) == reason

    def test_transient_mount_error_is_both(self):
        err = classify_failure(IN_USE, fatal=MountError, transient=TransientMountError)
        assert isinstance(err, MountError)
        assert isinstance(err, TransientIOError)
        assert err.reason == "file_in_use"

    def test_unknown_message_is_fatal(self):
        err = classify_failure("Error: 87", fatal=MountError, transient=TransientMountError)
        assert type(err) is MountError


class TestDismServicer:
    def test_mount_argv(self, tmp_path: Path, monkeypatch):
        runner = FakeRunner()
        monkeypatch.setattr(servicing, "run_cmd", runner)
        image = tmp_path / "boot.wim"
        image.write_bytes(b"wim")
        DismServicer(mount_timeout=42).mount(str(image), 1, str(tmp_path / "mount"))

        argv, kwargs = runner.calls[0]
        assert argv == [
            "dism.exe",
            "/Mount-Image",
            f"/ImageFile:{image}",
            "/Index:1",
            f"/MountDir:{tmp_path / 'mount'}",
        ]
        assert kwargs["timeout"] == 42
        assert (tmp_path / "mount").is_dir()

    def test_missing_image_is_mount_error(self, tmp_path: Path):
        with pytest.raises(MountError):
            DismServicer().mount(str(tmp_path / "missing.wim"), 1, str(tmp_path / "mount"))

    def test_mount_in_use_is_transient(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(servicing, "run_cmd", FakeRunner({"/Mount-Image": (1, IN_USE)}))
        image = tmp_path / "boot.wim"
        image.write_bytes(b"wim")
        with pytest.raises(TransientMountError):
            DismServicer().mount(str(image), 1, str(tmp_path / "mount"))

    @pytest.mark.parametrize("commit,flag", [(True, "/Commit"), (False, "/Discard")])
    def test_dismount_flag(self, monkeypatch, commit, flag):
        runner = FakeRunner()
        monkeypatch.setattr(servicing, "run_cmd", runner)
        DismServicer().dismount("C:/work/mount", commit)
        assert runner.calls[0][0][-1] == flag

    def test_dismount_failure_types(self, monkeypatch):
        monkeypatch.setattr(servicing, "run_cmd", FakeRunner({"/Unmount-Image": (1, "Access is denied.")}))
        with pytest.raises(TransientDismountError):
            DismServicer().dismount("C:/work/mount", True)
        monkeypatch.setattr(servicing, "run_cmd", FakeRunner({"/Unmount-Image": (1, "Error: 0xc1420127")}))
        with pytest.raises(DismountError) as exc_info:
            DismServicer().dismount("C:/work/mount", True)
        assert not isinstance(exc_info.value, TransientIOError)

    def test_force_dismount_cleans_up_mountpoints(self, monkeypatch):
        runner = FakeRunner({"/Unmount-Image": (1, "still mounted")})
        monkeypatch.setattr(servicing, "run_cmd", runner)
        DismServicer().force_dismount("C:/work/mount")
        assert [c[0][1] for c in runner.calls] == ["/Unmount-Image", "/Cleanup-Mountpoints"]

    def test_force_dismount_failure(self, monkeypatch):
        monkeypatch.setattr(servicing, "run_cmd", FakeRunner({"/Cleanup-Mountpoints": (1, "nope")}))
        with pytest.raises(DismountError):
            DismServicer().force_dismount("C:/work/mount")

    def test_dry_run_executes_nothing(self, tmp_path: Path):
        servicer = DismServicer(dism="definitely-not-installed-dism", dry_run=True)
        servicer.mount(str(tmp_path / "boot.wim"), 1, str(tmp_path / "mount"))
        servicer.dismount(str(tmp_path / "mount"), False)


class TestRegHiveEditor:
    def test_edit_argv(self, monkeypatch):
        runner = FakeRunner()
        monkeypatch.setattr(servicing, "run_cmd", runner)
        editor = RegHiveEditor()
        editor.load_hive("C:/mount/Windows/System32/config/SYSTEM", "IC_abc")
        editor.edit("IC_abc", r"ControlSet001\Control", RegistryValue("Foo", "1", "REG_DWORD"))
        editor.unload_hive("IC_abc")

        assert runner.calls[0][0] == ["reg.exe", "load", "HKLM\\IC_abc", "C:/mount/Windows/System32/config/SYSTEM"]
        assert runner.calls[1][0] == [
            "reg.exe", "add", "HKLM\\IC_abc\\ControlSet001\\Control",
            "/v", "Foo", "/t", "REG_DWORD", "/d", "1", "/f",
        ]
        assert runner.calls[2][0] == ["reg.exe", "unload", "HKLM\\IC_abc"]

    def test_load_in_use_is_transient(self, monkeypatch):
        monkeypatch.setattr(servicing, "run_cmd", FakeRunner({"load": (1, IN_USE)}))
        with pytest.raises(TransientIOError):
            RegHiveEditor().load_hive("SYSTEM", "IC_abc")

    def test_other_failures_are_fatal(self, monkeypatch):
        monkeypatch.setattr(servicing, "run_cmd", FakeRunner({"add": (1, "ERROR: Invalid syntax.")}))
        with pytest.raises(CustomizerError) as exc_info:
            RegHiveEditor().edit("IC_abc", "Key", RegistryValue("a", "b"))
        assert not isinstance(exc_info.value, TransientIOError)
