"""SQLite file backups taken before destructive maintenance (key rotation)."""

import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

from keywarden.config import BACKUP_DIRECTORY, DATABASE_URL
from keywarden.db import sqlite_path_from_url

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a pre-flight backup cannot be taken."""
    pass


def backup_database(
    database_url: str = DATABASE_URL,
    backup_dir: Optional[str | Path] = None,
) -> Path:
    """Copy the SQLite database file into the backup directory.

    The copy is named ``<stem>-<UTC timestamp><suffix>`` so repeated runs
    never overwrite each other.

    Returns:
        Path of the backup file

    Raises:
        BackupError: For non-SQLite databases or a missing database file
    """
    db_path = sqlite_path_from_url(database_url)
    if db_path is None:
        raise BackupError("Automated backup only supported for file-based SQLite databases")

    db_path = db_path.resolve()
    if not db_path.exists():
        raise BackupError(f"Database file not found at: {db_path}")

    target_dir = Path(backup_dir or BACKUP_DIRECTORY).resolve()
    target_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")
    backup_path = target_dir / f"{db_path.stem}-{timestamp}{db_path.suffix}"

    logger.info(f"Backing up database to: {backup_path}")
    shutil.copy2(db_path, backup_path)

    # WAL mode keeps recent writes in the -wal sidecar until checkpoint
    wal_path = db_path.with_name(db_path.name + "-wal")
    if wal_path.exists():
        shutil.copy2(wal_path, backup_path.with_name(backup_path.name + "-wal"))

    logger.info("Database backup complete")
    return backup_path
