"""Planning the migration: one policy per asset key, with conflict resolution."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from .models import Client, Database, MigrationError, PlannedPolicy, StoredIgnore

log = logging.getLogger(__name__)

# Ignore types in order of precedence when several ignores share an asset key.
_PRIORITY = ("wont-fix", "not-vulnerable", "temporary")
_DEFAULT_REASON = "Migrated from SAST ignore"


def generate_internal_id() -> str:
    """Return a random internal policy id of the form ``policy-<32 hex digits>``."""
    return "policy-" + secrets.token_hex(16)


def _creation_key(ignore: StoredIgnore) -> tuple[bool, datetime]:
    # An unknown creation time counts as the earliest possible one.
    return (ignore.created_at is not None, ignore.created_at or datetime.min)


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value is not None else "0001-01-01"


@dataclass
class PlanCommand:
    """Builds the migration plan from the gathered ignores of an organisation."""

    db: Database
    client: Optional[Client]
    org_id: str
    debug: bool = False

    def execute(self) -> int:
        """Plan one policy per asset key and return the number of policies planned."""
        log.info("Starting migration planning for organization: %s", self.org_id)

        try:
            ignores = [i for i in self.db.get_ignores_by_org_id(self.org_id) if i.asset_key]
        except Exception as exc:
            raise MigrationError(f"failed to get ignores with asset keys: {exc}") from exc

        by_asset_key: dict[str, list[StoredIgnore]] = {}
        for ignore in ignores:
            by_asset_key.setdefault(ignore.asset_key, []).append(ignore)

        log.info(
            "Found %d ignores with asset keys across %d unique asset keys",
            len(ignores),
            len(by_asset_key),
        )

        single = multiple = policies_created = ignores_to_migrate = 0
        for asset_key, group in by_asset_key.items():
            if len(group) == 1:
                single += 1
                selected = group[0]
            else:
                multiple += 1
                selected = self.resolve_conflict(group)
            try:
                self.create_policy(selected, group)
            except MigrationError as exc:
                log.warning("Warning: failed to create policy for asset key %s: %s", asset_key, exc)
                continue
            ignores_to_migrate += len(group)
            policies_created += 1

        log.info("Planning summary:")
        log.info("  Total asset keys: %d", len(by_asset_key))
        log.info("  Asset keys with single ignores: %d", single)
        log.info("  Asset keys with multiple ignores: %d", multiple)
        log.info("  Total policies to be created: %d", policies_created)
        log.info("  Total ignores to be migrated: %d", ignores_to_migrate)
        return policies_created

    def resolve_conflict(self, ignores: Sequence[StoredIgnore]) -> StoredIgnore:
        """Pick wont-fix over not-vulnerable over temporary, earliest creation first.

        Ignores of an unrecognised type count as temporary.
        """
        if not ignores:
            raise MigrationError("no ignores to choose from")

        groups: dict[str, list[StoredIgnore]] = {kind: [] for kind in _PRIORITY}
        for ignore in ignores:
            kind = ignore.ignore_type if ignore.ignore_type in groups else "temporary"
            groups[kind].append(ignore)

        for kind in _PRIORITY:
            candidates = groups[kind]
            if candidates:
                selected = min(candidates, key=_creation_key)
                log.info(
                    "Selected '%s' ignore %s from %d candidates (earliest creation date)",
                    kind,
                    selected.id,
                    len(candidates),
                )
                return selected

        log.warning("Warning: Could not select an ignore, using the first one")
        return ignores[0]

    def create_policy(
        self, selected_ignore: StoredIgnore, all_ignores: Sequence[StoredIgnore]
    ) -> PlannedPolicy:
        """Record a planned policy and link every source ignore to it."""
        internal_id = generate_internal_id()

        details = []
        for ignore in all_ignores:
            if ignore.id == selected_ignore.id:
                marker = " (SELECTED)"
                try:
                    self.db.exec(
                        "UPDATE ignores SET selected_for_migration = 1, internal_policy_id = ? "
                        "WHERE id = ?",
                        internal_id,
                        ignore.id,
                    )
                except Exception as exc:
                    raise MigrationError(f"failed to mark ignore as selected: {exc}") from exc
            else:
                marker = ""
                try:
                    self.db.exec(
                        "UPDATE ignores SET internal_policy_id = ? WHERE id = ?",
                        internal_id,
                        ignore.id,
                    )
                except Exception as exc:
                    raise MigrationError(
                        f"failed to update ignore with policy reference: {exc}"
                    ) from exc

            details.append(
                f"Ignore {ignore.id}: type={ignore.ignore_type}, "
                f"created={_format_date(ignore.created_at)}{marker}, reason={ignore.reason}"
            )

        reason = selected_ignore.reason or _DEFAULT_REASON
        reason += "\n\nMigrated from the following ignores:\n" + "\n".join(details)

        policy = PlannedPolicy(
            internal_id=internal_id,
            org_id=self.org_id,
            asset_key=selected_ignore.asset_key,
            policy_type=selected_ignore.ignore_type,
            reason=reason,
            expires_at=selected_ignore.expires_at,
            source_ignores=",".join(ignore.id for ignore in all_ignores),
        )
        try:
            self.db.insert_policy(policy)
        except Exception as exc:
            raise MigrationError(f"failed to insert policy: {exc}") from exc

        log.info(
            "Created policy plan for asset key %s with %d source ignores",
            selected_ignore.asset_key,
            len(all_ignores),
        )
        return policy

    def print_plan(self) -> int:
        """Log the planned policies and return the number of ignores selected for migration."""
        log.info("Printing migration plan for organization: %s", self.org_id)

        try:
            policies = self.db.get_policies_by_org_id(self.org_id)
        except Exception as exc:
            raise MigrationError(f"failed to get policies: {exc}") from exc

        total = len(policies)
        log.info("Found %d policies in the plan:", total)
        for index, policy in enumerate(policies):
            if index < 10 or total < 20:
                log.info(
                    "  Policy %d/%d: InternalID=%s, AssetKey=%s, Type=%s, Ignores=%d",
                    index + 1,
                    total,
                    policy.internal_id,
                    policy.asset_key,
                    policy.policy_type,
                    len(policy.source_ignores.split(",")),
                )
            elif index == 10:
                log.info("  ... and %d more policies", total - 10)
                break

        try:
            rows: list[Any] = self.db.query(
                "SELECT COUNT(*) FROM ignores WHERE org_id = ? AND selected_for_migration = 1",
                self.org_id,
            )
        except Exception as exc:
            raise MigrationError(f"failed to count selected ignores: {exc}") from exc

        selected_count = int(rows[0][0]) if rows else 0
        log.info("Selected %d ignores for migration", selected_count)
        return selected_count