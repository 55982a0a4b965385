"""Tests for pre-rotation database backups (keywarden/services/db_backup.py)."""

import re

import pytest

from keywarden.services.db_backup import BackupError, backup_database


class TestBackupDatabase:
    """Test suite for backup_database."""

    def test_copies_database_file(self, tmp_path):
        db_file = tmp_path / "keywarden.db"
        db_file.write_bytes(b"SQLite format 3\x00data")
        backups = tmp_path / "backups"

        path = backup_database(f"sqlite+aiosqlite:///{db_file}", backups)

        assert path.parent == backups.resolve()
        assert re.fullmatch(r"keywarden-\d{4}-\d{2}-\d{2}T[\d-]+\.db", path.name)
        assert path.read_bytes() == db_file.read_bytes()

    def test_copies_wal_sidecar(self, tmp_path):
        db_file = tmp_path / "keywarden.db"
        db_file.write_bytes(b"main")
        (tmp_path / "keywarden.db-wal").write_bytes(b"wal")

        path = backup_database(f"sqlite+aiosqlite:///{db_file}", tmp_path / "backups")

        assert path.with_name(path.name + "-wal").read_bytes() == b"wal"

    def test_repeated_backups_do_not_collide(self, tmp_path):
        db_file = tmp_path / "keywarden.db"
        db_file.write_bytes(b"main")
        url = f"sqlite+aiosqlite:///{db_file}"

        assert backup_database(url, tmp_path / "b") != backup_database(url, tmp_path / "b")

    @pytest.mark.parametrize(
        "url",
        ["sqlite+aiosqlite:///:memory:", "postgresql+asyncpg://user@localhost/keywarden"],
    )
    def test_unsupported_databases(self, url, tmp_path):
        with pytest.raises(BackupError):
            backup_database(url, tmp_path)

    def test_missing_database_file(self, tmp_path):
        with pytest.raises(BackupError):
            backup_database(f"sqlite+aiosqlite:///{tmp_path}/nope.db", tmp_path)
