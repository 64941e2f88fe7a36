"""Backing up and restoring the migration database file."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .models import MigrationError

log = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


def copy_file(src: str, dst: str) -> None:
    """Copy the contents of src to dst, creating or truncating dst."""
    with open(src, "rb") as source, open(dst, "wb") as dest:
        shutil.copyfileobj(source, dest)


@dataclass
class BackupCommand:
    """Copies the database file into a timestamped file in the backup directory."""

    db: Any
    db_path: str
    backup_path: str
    debug: bool = False

    def execute(self) -> str:
        log.info("Starting database backup from %s", self.db_path)
        try:
            os.makedirs(self.backup_path, exist_ok=True)
        except OSError as exc:
            raise MigrationError(f"failed to create backup directory: {exc}") from exc

        timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)
        backup_file = os.path.join(self.backup_path, f"cci-migration-{timestamp}.db")
        log.info("Creating backup at: %s", backup_file)

        try:
            source = open(self.db_path, "rb")
        except OSError as exc:
            raise MigrationError(f"failed to open source database: {exc}") from exc
        with source:
            try:
                dest = open(backup_file, "wb")
            except OSError as exc:
                raise MigrationError(f"failed to create backup file: {exc}") from exc
            with dest:
                try:
                    shutil.copyfileobj(source, dest)
                except OSError as exc:
                    raise MigrationError(f"failed to copy database to backup: {exc}") from exc

        log.info("Backup completed successfully: %s", backup_file)
        print(f"Backup created at: {backup_file}")
        return backup_file


@dataclass
class RestoreCommand:
    """Replaces the database file with a backup, keeping a copy of the current one."""

    db: Any
    db_path: str
    backup_path: str
    backup_file: str = ""
    debug: bool = False

    def execute(self) -> str:
        if not self.backup_file:
            source_file = self.find_latest_backup()
        elif os.path.isabs(self.backup_file):
            source_file = self.backup_file
        else:
            source_file = os.path.join(self.backup_path, self.backup_file)

        log.info("Restoring database from backup: %s", source_file)

        try:
            self.db.close()
        except Exception as exc:  # the restore proceeds regardless
            log.warning("Warning: failed to close database connection: %s", exc)

        timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)
        current_backup = f"{self.db_path}.before-restore.{timestamp}"
        log.info("Creating backup of current database at: %s", current_backup)

        try:
            copy_file(self.db_path, current_backup)
        except OSError as exc:
            raise MigrationError(f"failed to backup current database: {exc}") from exc

        try:
            copy_file(source_file, self.db_path)
        except OSError as exc:
            raise MigrationError(f"failed to restore database: {exc}") from exc

        log.info("Database restored successfully from: %s", source_file)
        print(f"Database restored from: {source_file}")
        print(f"Previous database backed up to: {current_backup}")
        return source_file

    def find_latest_backup(self) -> str:
        """Return the most recently modified .db file in the backup directory."""
        try:
            entries = list(os.scandir(self.backup_path))
        except OSError as exc:
            raise MigrationError(f"failed to read backup directory: {exc}") from exc

        latest = ""
        latest_time = 0.0
        for entry in entries:
            if entry.is_dir() or os.path.splitext(entry.name)[1] != ".db":
                continue
            try:
                mtime = entry.stat().st_mtime
            except OSError:
                continue
            if not latest or mtime > latest_time:
                latest = os.path.join(self.backup_path, entry.name)
                latest_time = mtime

        if not latest:
            raise MigrationError(f"no backup files found in {self.backup_path}")
        return latest