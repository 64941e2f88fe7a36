"""Retesting projects whose ignores have been migrated."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .models import Client, Database, MigrationError, Target

log = logging.getLogger(__name__)


@dataclass
class RetestCommand:
    """Triggers a new test of every non-CLI project that has migrated ignores."""

    db: Database
    client: Client
    org_id: str
    debug: bool = False

    def _debug(self, message: str, *args: Any) -> None:
        if self.debug:
            log.info("Debug: " + message, *args)

    def execute(self) -> int:
        """Retest the pending projects; return how many were retested successfully."""
        log.info("Starting retest for organization: %s", self.org_id)

        self._debug("Counting CLI projects...")
        try:
            rows = self.db.query(
                """
                SELECT COUNT(DISTINCT p.id)
                FROM projects p
                JOIN ignores i ON p.id = i.project_id
                WHERE p.org_id = ? AND i.migrated_at IS NOT NULL AND p.is_cli_project = 1
                """,
                self.org_id,
            )
        except Exception as exc:
            log.warning("Warning: failed to count CLI projects: %s", exc)
        else:
            cli_count = int(rows[0][0]) if rows else 0
            if cli_count > 0:
                log.info("Skipping %d CLI projects (cannot be retested via API)", cli_count)

        self._debug("Querying for projects to retest...")
        try:
            rows = self.db.query(
                """
                SELECT DISTINCT p.id, p.name, p.target_information
                FROM projects p
                JOIN ignores i ON p.id = i.project_id
                WHERE p.org_id = ? AND i.migrated_at IS NOT NULL
                  AND p.retested_at IS NULL AND p.is_cli_project = 0
                """,
                self.org_id,
            )
        except Exception as exc:
            raise MigrationError(f"failed to get projects to retest: {exc}") from exc

        projects = []
        for project_id, name, target_json in rows:
            if project_id is None or name is None or target_json is None:
                raise MigrationError(f"failed to scan project: NULL value in row for {project_id}")
            projects.append((str(project_id), str(name), str(target_json)))

        self._debug("Found %d projects to retest", len(projects))
        total = len(projects)
        succeeded = failed = 0

        for index, (project_id, name, target_json) in enumerate(projects, start=1):
            log.info("Retesting project %d/%d: %s (%s)", index, total, name, project_id)

            try:
                target = Target.from_json(target_json)
            except (ValueError, MigrationError) as exc:
                log.warning(
                    "Warning: failed to parse target information for project %s: %s", project_id, exc
                )
                failed += 1
                continue

            if target.is_empty():
                fetched = self._fetch_target(project_id)
                if fetched is None:
                    failed += 1
                    continue
                target = fetched

            try:
                self.client.retest_project(self.org_id, target)
            except Exception as exc:
                log.warning("Warning: failed to retest project %s: %s", project_id, exc)
                message = str(exc)
                if "failed to get integration information" in message:
                    log.info(
                        "Debug: Integration ID was %s for project %s", target.integration_id, project_id
                    )
                if "failed to create import payload" in message:
                    log.info(
                        "Debug: Unsupported integration type for project %s. "
                        "Consider checking the integration configuration.",
                        project_id,
                    )
                failed += 1
                continue

            try:
                self.db.exec(
                    "UPDATE projects SET retested_at = ? WHERE id = ?", datetime.now(), project_id
                )
            except Exception as exc:
                log.warning("Warning: failed to mark project as retested: %s", exc)
                continue

            succeeded += 1
            log.info("Successfully retested project %s", project_id)

        log.info("Retest summary:")
        log.info("  Total projects to retest: %d", total)
        log.info("  Projects successfully retested: %d", succeeded)
        log.info("  Projects failed to retest: %d", failed)
        return succeeded

    def _fetch_target(self, project_id: str) -> Target | None:
        """Look the project's target up through the API and store it; None on failure."""
        try:
            api_projects = self.client.get_projects(self.org_id)
        except Exception as exc:
            log.warning(
                "Warning: failed to fetch projects to determine target_id for project %s: %s",
                project_id,
                exc,
            )
            return None

        match = next((p for p in api_projects if p.id == project_id), None)
        target_id = match.target.id if match is not None else ""
        if not target_id:
            log.warning("Warning: could not determine target_id for project %s", project_id)
            return None

        try:
            target = self.client.get_project_target(self.org_id, target_id)
        except Exception as exc:
            log.warning(
                "Warning: failed to fetch target information from API for project %s: %s",
                project_id,
                exc,
            )
            return None

        if match.target_reference:
            target.branch = match.target_reference

        try:
            self.db.exec(
                "UPDATE projects SET target_information = ? WHERE id = ?", target.to_json(), project_id
            )
        except Exception as exc:
            log.warning("Warning: failed to update target information for project %s: %s", project_id, exc)
        return target