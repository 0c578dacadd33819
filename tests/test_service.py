"""Tests for the command-line entry points."""

import pytest

from savekeeper.backup_store import BackupStore
from savekeeper.config import ConfigFile
from savekeeper.service import main


@pytest.fixture
def config_file(tmp_path, source_file, archive_dir, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    cf = ConfigFile(tmp_path / "config.json")
    cf.update(source_path=str(source_file), archive_path=str(archive_dir), max_backups=2)
    return cf


class TestCommands:
    """Tests for the maintenance commands."""

    def test_help(self, capsys):
        assert main(["--help"]) == 0
        assert "restore ID" in capsys.readouterr().out

    def test_unknown_command(self, capsys):
        assert main(["explode"]) == 2

    def test_missing_argument(self, config_file):
        assert main(["delete"], config_file=config_file) == 2

    def test_backup_then_list(self, config_file, capsys):
        assert main(["backup"], config_file=config_file) == 0
        record = BackupStore(config_file.config.archive_path).latest()

        assert main(["list"], config_file=config_file) == 0
        assert record.id in capsys.readouterr().out

    def test_backup_unchanged(self, config_file, capsys):
        main(["backup"], config_file=config_file)
        capsys.readouterr()

        assert main(["backup"], config_file=config_file) == 0
        assert "Nothing to back up" in capsys.readouterr().out

    def test_backup_applies_retention(self, config_file, source_file):
        for content in (b"1", b"22", b"333"):
            source_file.write_bytes(content)
            main(["backup"], config_file=config_file)

        assert len(BackupStore(config_file.config.archive_path).list()) == 2

    def test_restore_to_original_path(self, config_file, source_file):
        main(["backup"], config_file=config_file)
        record = BackupStore(config_file.config.archive_path).latest()
        source_file.write_bytes(b"overwritten")

        assert main(["restore", record.id], config_file=config_file) == 0
        assert source_file.read_bytes() == b"AAAA"

    def test_restore_to_explicit_path(self, config_file, tmp_path):
        main(["backup"], config_file=config_file)
        record = BackupStore(config_file.config.archive_path).latest()
        target = tmp_path / "elsewhere" / "copy.sav"

        assert main(["restore", record.id, str(target)], config_file=config_file) == 0
        assert target.read_bytes() == b"AAAA"

    def test_restore_unknown_id(self, config_file, capsys):
        assert main(["restore", "backup_0_nope"], config_file=config_file) == 1
        assert "ERROR" in capsys.readouterr().err

    def test_delete(self, config_file):
        main(["backup"], config_file=config_file)
        record = BackupStore(config_file.config.archive_path).latest()

        assert main(["delete", record.id], config_file=config_file) == 0
        assert main(["delete", record.id], config_file=config_file) == 1

    def test_stats(self, config_file, capsys):
        main(["backup"], config_file=config_file)
        capsys.readouterr()

        assert main(["stats"], config_file=config_file) == 0
        assert "Backups:    1" in capsys.readouterr().out

    def test_backup_requires_source(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        cf = ConfigFile(tmp_path / "empty.json")

        assert main(["backup"], config_file=cf) == 1
        assert "not configured" in capsys.readouterr().err
