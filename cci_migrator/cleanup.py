"""Deleting the ignores that have been migrated to policies."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from .models import Client, Database, MigrationError

log = logging.getLogger(__name__)

_ATTEMPTS = 3


def _is_lock_error(exc: BaseException) -> bool:
    return "locked" in str(exc)


@dataclass
class CleanupCommand:
    """Deletes migrated ignores through the API and records their deletion."""

    db: Database
    client: Client
    org_id: str
    debug: bool = False
    retry_delay: float = 0.5

    def execute(self) -> int:
        """Delete every migrated, not yet deleted ignore; return how many were deleted."""
        log.info("Starting cleanup for organization: %s", self.org_id)

        try:
            rows = self.db.query(
                """
                SELECT id, project_id
                FROM ignores
                WHERE org_id = ? AND migrated_at IS NOT NULL AND deleted_at IS NULL
                """,
                self.org_id,
            )
            pending = [(str(row[0]), str(row[1])) for row in rows]
        except Exception as exc:
            raise MigrationError(f"failed to get ignores to delete: {exc}") from exc

        total = len(pending)
        deleted = failed = 0
        for index, (ignore_id, project_id) in enumerate(pending, start=1):
            log.info("Deleting ignore %d/%d: %s from project %s", index, total, ignore_id, project_id)
            try:
                self.client.delete_ignore(self.org_id, project_id, ignore_id)
            except Exception as exc:
                log.warning("Warning: failed to delete ignore %s: %s", ignore_id, exc)
                failed += 1
                continue

            error = self._mark_deleted(ignore_id)
            if error is not None:
                log.warning(
                    "Warning: all transaction attempts failed for ignore %s: %s", ignore_id, error
                )
                failed += 1
                continue

            deleted += 1
            log.info("Successfully deleted ignore %s", ignore_id)

        log.info("Cleanup summary:")
        log.info("  Total ignores to delete: %d", total)
        log.info("  Ignores successfully deleted: %d", deleted)
        log.info("  Ignores failed to delete: %d", failed)

        self._log_progress()
        return deleted

    def _mark_deleted(self, ignore_id: str) -> Optional[BaseException]:
        """Set deleted_at in a transaction, retrying on lock errors; return the last error."""
        error: Optional[BaseException] = None
        for attempt in range(_ATTEMPTS):
            if attempt > 0:
                log.info(
                    "Retrying transaction for ignore %s (attempt %d/%d)...",
                    ignore_id,
                    attempt + 1,
                    _ATTEMPTS,
                )
                time.sleep(attempt * self.retry_delay)

            try:
                tx = self.db.begin()
            except Exception as exc:
                log.warning("Warning: failed to begin transaction: %s", exc)
                error = exc
                continue

            try:
                tx.exec("UPDATE ignores SET deleted_at = ? WHERE id = ?", datetime.now(), ignore_id)
            except Exception as exc:
                log.warning("Warning: failed to mark ignore as deleted: %s", exc)
                try:
                    tx.rollback()
                except Exception as rollback_exc:
                    log.warning("Warning: failed to rollback transaction: %s", rollback_exc)
                error = exc
                if _is_lock_error(exc):
                    continue
                return error

            try:
                tx.commit()
            except Exception as exc:
                log.warning("Warning: failed to commit transaction: %s", exc)
                error = exc
                if _is_lock_error(exc):
                    continue
                return error

            return None
        return error

    def _count(self, condition: str, label: str) -> int:
        try:
            row: Any = self.db.query_row(
                f"SELECT COUNT(*) FROM ignores WHERE org_id = ?{condition}", self.org_id
            )
            return int(row[0])
        except Exception as exc:
            log.warning("Warning: failed to count %s ignores: %s", label, exc)
            return 0

    def _log_progress(self) -> None:
        total = self._count("", "total")
        migrated = self._count(" AND migrated_at IS NOT NULL", "migrated")
        deleted = self._count(" AND deleted_at IS NOT NULL", "deleted")

        log.info("Overall migration progress:")
        log.info("  Total ignores: %d", total)
        if total > 0:
            log.info("  Migrated ignores: %d (%.1f%%)", migrated, migrated / total * 100)
            log.info("  Deleted ignores: %d (%.1f%%)", deleted, deleted / total * 100)
            if migrated == total and deleted == total:
                log.info("Migration completed successfully!")
            else:
                log.info("Migration is still in progress")
        else:
            log.info("No ignores found to migrate")