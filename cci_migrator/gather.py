"""Collecting ignores, issues and projects of an organisation into the migration database."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Sequence

from .models import (
    Client,
    Database,
    MigrationError,
    StoredIgnore,
    StoredIssue,
    StoredProject,
)

log = logging.getLogger(__name__)

GATHER_VERSION = "2.0.0"
API_VERSION = "v1"

_UPDATE_IGNORE_ASSET_KEYS = """
    UPDATE ignores
    SET asset_key = (
        SELECT i.asset_key
        FROM issues i
        WHERE i.project_key = ignores.issue_id
          AND i.org_id = ignores.org_id
          AND i.project_id = ignores.project_id
        LIMIT 1
    )
    WHERE ignores.org_id = ?
      AND EXISTS (
        SELECT 1
        FROM issues i
        WHERE i.project_key = ignores.issue_id
          AND i.org_id = ignores.org_id
          AND i.project_id = ignores.project_id
          AND i.asset_key IS NOT NULL
          AND i.asset_key != ''
    );"""


def _log_listing(label: str, items: Sequence[Any], describe: Callable[[Any], str]) -> None:
    """Log the first ten items, or all of them when there are fewer than twenty."""
    total = len(items)
    log.info("Found %d %s:", total, label)
    for index, item in enumerate(items):
        if index < 10 or total < 20:
            log.info("  %s %d/%d: %s", label[:-1].capitalize(), index + 1, total, describe(item))
        elif index == 10:
            log.info("  ... and %d more %s", total - 10, label)
            break


def _text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class GatherCommand:
    """Gathers code-analysis projects, ignores and issues for one organisation."""

    db: Database
    client: Client
    org_id: str
    debug: bool = False

    def _debug(self, message: str, *args: Any) -> None:
        if self.debug:
            log.info("Debug: " + message, *args)

    def execute(self) -> None:
        log.info("Starting data gathering for organization: %s", self.org_id)

        log.info("Phase 1: Gathering SAST projects...")
        try:
            projects = self.client.get_projects(self.org_id)
        except Exception as exc:
            raise MigrationError(f"failed to get projects: {exc}") from exc

        log.info("Found %d SAST projects to process", len(projects))
        for project in projects:
            self._store_project(project)

        log.info("Phase 2: Gathering SAST ignores...")
        for project in projects:
            self._store_ignores(project)

        log.info("Phase 3: Gathering SAST issues and asset keys...")
        try:
            issues = self.client.get_sast_issues(self.org_id, "")
        except Exception as exc:
            log.warning("Warning: failed to get SAST issues: %s", exc)
            raise MigrationError(f"failed to get SAST issues: {exc}") from exc

        log.info("Fetched %d SAST issues for organization", len(issues))
        for index, issue in enumerate(issues, start=1):
            self._store_issue(index, len(issues), issue)

        log.info("Phase 3.1: Updating asset keys for all ignores in organization %s...", self.org_id)
        try:
            result = self.db.exec(_UPDATE_IGNORE_ASSET_KEYS, self.org_id)
        except Exception as exc:
            log.warning(
                "Warning: failed to bulk update asset keys for ignores in org %s: %s", self.org_id, exc
            )
        else:
            rows_affected = getattr(result, "rowcount", None)
            if rows_affected is None:
                log.info(
                    "Successfully executed bulk update for ignores in organization %s "
                    "(RowsAffected not available).",
                    self.org_id,
                )
            else:
                log.info(
                    "Successfully executed bulk update for ignores in org %s. Rows affected: %d",
                    self.org_id,
                    rows_affected,
                )

        try:
            self.db.update_collection_metadata(datetime.now(), GATHER_VERSION, API_VERSION)
        except Exception as exc:
            raise MigrationError(f"failed to update collection metadata: {exc}") from exc

        self._log_summary()
        log.info("Data gathering completed successfully")

    def _store_project(self, project: Any) -> None:
        log.info("Processing project: %s (%s)", project.name, project.id)

        is_cli_project = project.origin == "cli"
        if is_cli_project:
            log.info(
                "Detected CLI project: %s (origin: %s) - will be excluded from retesting",
                project.name,
                project.origin,
            )

        target_id = project.target.id
        if not target_id:
            log.warning("Warning: target_id missing for project %s, skipping target retrieval", project.id)
            return

        try:
            target = self.client.get_project_target(self.org_id, target_id)
        except Exception as exc:
            log.warning("Warning: failed to get target for project %s: %s", project.id, exc)
            return

        if project.target_reference:
            target.branch = project.target_reference

        stored = StoredProject(
            id=project.id,
            org_id=self.org_id,
            name=project.name,
            target_information=target.to_json(),
            is_cli_project=is_cli_project,
        )
        try:
            self.db.insert_project(stored)
        except Exception as exc:
            log.warning("Warning: failed to insert project %s: %s", project.id, exc)
            return

        if is_cli_project:
            log.info("Successfully stored CLI project %s (will not be retested)", project.id)
        else:
            log.info("Successfully stored project %s with target information", project.id)

    def _store_ignores(self, project: Any) -> None:
        log.info("Processing ignores for project: %s (%s)", project.name, project.id)
        try:
            ignores = self.client.get_ignores(self.org_id, project.id)
        except Exception as exc:
            log.warning("Warning: failed to get ignores for project %s: %s", project.id, exc)
            return

        log.info("Fetched %d ignores for project %s", len(ignores), project.id)
        if not ignores:
            log.info("No ignores found for project %s, skipping", project.id)
            return

        for index, ignore in enumerate(ignores, start=1):
            log.info("Processing ignore %d/%d: ID=%s", index, len(ignores), ignore.id)
            try:
                original_state = json.dumps(ignore.to_dict(), default=str)
            except (TypeError, ValueError) as exc:
                log.warning("Warning: failed to marshal original state for ignore %s: %s", ignore.id, exc)
                continue

            stored = StoredIgnore(
                id=ignore.id,
                issue_id=ignore.id,  # the ignore id is the issue id
                org_id=self.org_id,
                project_id=project.id,
                reason=ignore.reason,
                ignore_type=ignore.reason_type,
                created_at=ignore.created_at,
                expires_at=ignore.expires_at,
                asset_key="",
                original_state=original_state,
            )
            try:
                self.db.insert_ignore(stored)
            except Exception as exc:
                log.warning("Warning: failed to insert ignore %s: %s", ignore.id, exc)
                continue
            log.info("Successfully inserted ignore %s into database", ignore.id)

    def _store_issue(self, index: int, total: int, issue: Any) -> None:
        log.info(
            "Processing issue %d/%d: ID=%s, AssetKey=%s, ProjectKey=%s",
            index,
            total,
            issue.id,
            issue.key_asset,
            issue.key,
        )
        try:
            original_state = json.dumps(issue.to_dict(), default=str)
        except (TypeError, ValueError) as exc:
            log.warning("Warning: failed to marshal original state for issue %s: %s", issue.id, exc)
            return

        stored = StoredIssue(
            id=issue.id,
            org_id=self.org_id,
            project_id=issue.scan_item_id,
            asset_key=issue.key_asset,
            project_key=issue.key,
            original_state=original_state,
        )
        self._debug(
            "Preparing to insert issue: ID=%s OrgID=%s ProjectID=%s AssetKey=%s ProjectKey=%s",
            stored.id,
            stored.org_id,
            stored.project_id,
            stored.asset_key,
            stored.project_key,
        )
        try:
            self.db.insert_issue(stored)
        except Exception as exc:
            log.warning("Warning: failed to insert issue %s: %s", issue.id, exc)
            return
        log.info(
            "Successfully inserted issue %s with asset key %s and project key %s into database",
            issue.id,
            issue.key_asset,
            issue.key,
        )

    def _log_summary(self) -> None:
        try:
            ignores = self.db.get_ignores_by_org_id(self.org_id)
        except Exception as exc:
            log.error("Error checking ignores after gathering: %s", exc)
        else:
            log.info("Found %d SAST ignores for organization %s after gathering", len(ignores), self.org_id)
            with_asset_key = sum(1 for ignore in ignores if ignore.asset_key)
            share = with_asset_key / len(ignores) * 100 if ignores else float("nan")
            log.info("%d of %d ignores have asset keys (%.1f%%)", with_asset_key, len(ignores), share)

        for table, label in (("issues", "SAST issues"), ("projects", "SAST projects")):
            try:
                (count,) = self.db.query_row(f"SELECT COUNT(*) FROM {table} WHERE org_id = ?", self.org_id)
            except Exception as exc:
                log.error("Error checking %s count: %s", table, exc)
            else:
                log.info("Found %d %s for organization %s", count, label, self.org_id)

    def print(self) -> None:
        """Log the gathered ignores, issues and projects of the organisation."""
        log.info("Printing gathered data for organization: %s", self.org_id)

        try:
            ignores = self.db.get_ignores_by_org_id(self.org_id)
        except Exception as exc:
            raise MigrationError(f"failed to get ignores: {exc}") from exc
        _log_listing(
            "ignores",
            ignores,
            lambda i: (
                f"ID={i.id}, IssueID={i.issue_id}, AssetKey={i.asset_key}, "
                f"Type={i.ignore_type}, Reason={i.reason}"
            ),
        )

        try:
            issue_rows = self.db.query(
                "SELECT id, org_id, project_id, asset_key, project_key FROM issues WHERE org_id = ?",
                self.org_id,
            )
        except Exception as exc:
            raise MigrationError(f"failed to get issues: {exc}") from exc
        issues = [tuple(_text(value) for value in row) for row in issue_rows]
        _log_listing("issues", issues, lambda r: f"ID={r[0]}, AssetKey={r[3]}, ProjectKey={r[4]}")

        try:
            project_rows = self.db.query(
                "SELECT id, org_id, name FROM projects WHERE org_id = ?", self.org_id
            )
        except Exception as exc:
            raise MigrationError(f"failed to get projects: {exc}") from exc
        projects = [tuple(_text(value) for value in row) for row in project_rows]
        _log_listing("projects", projects, lambda r: f"ID={r[0]}, Name={r[2]}")