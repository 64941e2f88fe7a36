"""Creating the planned policies through the policies API."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from .models import (
    Action,
    ActionData,
    Client,
    Condition,
    ConditionsGroup,
    CreatePolicyAttributes,
    Database,
    MigrationError,
    PlannedPolicy,
)

log = logging.getLogger(__name__)

_ATTEMPTS = 3
_FINDING_FIELD = "snyk/asset/finding/v1"


def _is_lock_error(exc: BaseException) -> bool:
    return "locked" in str(exc)


def _policy_attributes(policy: PlannedPolicy) -> CreatePolicyAttributes:
    return CreatePolicyAttributes(
        name=f"Migrated policy for {policy.asset_key}",
        action_type="ignore",
        action=Action(
            data=ActionData(
                ignore_type=policy.policy_type,
                reason=policy.reason,
                expires=policy.expires_at,
            )
        ),
        conditions_group=ConditionsGroup(
            logical_operator="and",
            conditions=[Condition(field=_FINDING_FIELD, operator="includes", value=policy.asset_key)],
        ),
    )


@dataclass
class ExecuteCommand:
    """Creates every planned policy that has no external id yet and links its ignores."""

    db: Database
    client: Client
    org_id: str
    debug: bool = False
    timeout: float = 600.0
    retry_delay: float = 0.5

    def _debug(self, message: str, *args: Any) -> None:
        if self.debug:
            log.info("Debug: " + message, *args)

    def execute(self) -> int:
        """Create the planned policies; return how many were created.

        Raises MigrationError when the whole run takes longer than the timeout.
        """
        log.info("Starting policy creation for organization: %s", self.org_id)

        outcome: dict[str, Any] = {}

        def worker() -> None:
            try:
                outcome["created"] = self._run()
            except BaseException as exc:  # handed back to the calling thread
                outcome["error"] = exc

        thread = threading.Thread(target=worker, daemon=True)
        thread.start()
        thread.join(self.timeout)

        if thread.is_alive():
            log.error("ERROR: Execution timed out after %s seconds", self.timeout)
            raise MigrationError("execution timed out")
        if "error" in outcome:
            raise outcome["error"]

        log.info("Execution completed successfully")
        return outcome["created"]

    def _run(self) -> int:
        log.info("Getting planned policies...")
        self._debug("Loading policies without external id for org_id=%s", self.org_id)
        try:
            policies = [
                policy
                for policy in self.db.get_policies_by_org_id(self.org_id)
                if not policy.external_id
            ]
        except Exception as exc:
            self._debug("Error executing query: %s", exc)
            log.error("Failed to get planned policies: %s", exc)
            return 0

        total = len(policies)
        created = failed = 0
        log.info("Processing %d policies...", total)

        for index, policy in enumerate(policies, start=1):
            self._debug(
                "Processing policy: InternalID=%s, OrgID=%s, AssetKey=%s, ExternalID=%s",
                policy.internal_id,
                policy.org_id,
                policy.asset_key,
                policy.external_id,
            )
            log.info("Creating policy %d of %d for asset key %s", index, total, policy.asset_key)

            log.info("Calling API to create policy for %s...", policy.asset_key)
            try:
                remote = self.client.create_policy(self.org_id, _policy_attributes(policy), None)
            except Exception as exc:
                log.warning(
                    "Warning: failed to create policy for asset key %s: %s", policy.asset_key, exc
                )
                failed += 1
                continue

            external_id = remote.id
            error = self._record(policy, external_id)
            if error is not None:
                log.warning(
                    "Warning: all transaction attempts failed for policy %s: %s",
                    policy.internal_id,
                    error,
                )
                failed += 1
                continue

            created += 1
            log.info(
                "Successfully created policy for asset key %s with external ID %s",
                policy.asset_key,
                external_id,
            )

        log.info("Execution summary:")
        log.info("  Total policies planned: %d", total)
        log.info("  Policies successfully created: %d", created)
        log.info("  Policies failed to create: %d", failed)

        try:
            (migrated,) = self.db.query_row(
                "SELECT COUNT(*) FROM ignores WHERE org_id = ? AND migrated_at IS NOT NULL",
                self.org_id,
            )
        except Exception as exc:
            log.warning("Warning: failed to count migrated ignores: %s", exc)
        else:
            log.info("  Total ignores migrated: %d", migrated)

        return created

    def _record(self, policy: PlannedPolicy, external_id: str) -> Optional[BaseException]:
        """Store the external id and mark linked ignores as migrated; return the last error."""
        now = datetime.now()
        error: Optional[BaseException] = None
        for attempt in range(_ATTEMPTS):
            if attempt > 0:
                log.info("Retrying transaction (attempt %d/%d)...", attempt + 1, _ATTEMPTS)
                time.sleep(attempt * self.retry_delay)

            try:
                tx = self.db.begin()
            except Exception as exc:
                log.warning("Warning: failed to begin transaction: %s", exc)
                error = exc
                continue

            try:
                tx.exec(
                    "UPDATE policies SET external_id = ?, created_at = ? WHERE internal_id = ?",
                    external_id,
                    now,
                    policy.internal_id,
                )
                tx.exec(
                    "UPDATE ignores SET migrated_at = ?, policy_id = ? WHERE internal_policy_id = ?",
                    now,
                    external_id,
                    policy.internal_id,
                )
                tx.commit()
            except Exception as exc:
                log.warning("Warning: failed to record created policy: %s", exc)
                try:
                    tx.rollback()
                except Exception as rollback_exc:
                    log.warning("Warning: failed to rollback transaction: %s", rollback_exc)
                error = exc
                if _is_lock_error(exc):
                    continue
                return error

            return None
        return error