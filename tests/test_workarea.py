from __future__ import annotations

from pathlib import Path

import pytest

from image_customizer.workarea import WorkArea


class TestWorkArea:
    def test_create_layout(self, tmp_path: Path, locks):
        area = WorkArea.create(tmp_path / "work", locks=locks, lock_timeout=1)
        assert area.root.parent == tmp_path / "work"
        assert area.root.name == f"session-{area.instance_id}"
        assert area.mount_dir.is_dir()
        assert area.staging_dir.is_dir()

    def test_instance_ids_are_unique(self, tmp_path: Path):
        ids = {WorkArea.create(tmp_path).instance_id for _ in range(20)}
        assert len(ids) == 20

    def test_duplicate_instance_id_is_rejected(self, tmp_path: Path):
        WorkArea.create(tmp_path, instance_id="abc")
        with pytest.raises(FileExistsError):
            WorkArea.create(tmp_path, instance_id="abc")

    def test_remove(self, tmp_path: Path):
        area = WorkArea.create(tmp_path)
        (area.mount_dir / "Windows").mkdir()
        assert area.remove() is True
        assert not area.root.exists()

    def test_keep(self, tmp_path: Path):
        area = WorkArea.create(tmp_path, keep=True)
        assert area.remove() is False
        assert area.root.exists()

    def test_remove_failure_is_logged(self, tmp_path: Path, monkeypatch, caplog):
        area = WorkArea.create(tmp_path)

        def boom(path):
            raise PermissionError("mount point still busy")

        monkeypatch.setattr("image_customizer.workarea.shutil.rmtree", boom)
        assert area.remove() is False
        assert "Could not remove work area" in caplog.text

    def test_unwritable_scratch_raises(self, tmp_path: Path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x", encoding="utf-8")
        with pytest.raises(OSError):
            WorkArea.create(blocker / "work")

    def test_partial_layout_is_removed(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(WorkArea, "staging_dir", property(lambda self: self.root / "gone" / "staging"))
        with pytest.raises(FileNotFoundError):
            WorkArea.create(tmp_path / "work", instance_id="abc")
        assert list((tmp_path / "work").iterdir()) == []
