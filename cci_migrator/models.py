"""Domain records, the migration database and the Snyk client interface."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable


class MigrationError(Exception):
    """Raised when a migration step cannot be completed."""


# --------------------------------------------------------------------------
# Records exchanged with the Snyk API
# --------------------------------------------------------------------------


@dataclass
class Target:
    """A Snyk target: the repository that a project scans."""

    id: str = ""
    name: str = ""
    url: str = ""
    owner: str = ""
    repo: str = ""
    branch: str = ""
    origin: str = ""
    source: str = ""
    integration_id: str = ""

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Target":
        known = {f.name for f in fields(cls)}
        return cls(**{key: str(value) for key, value in data.items() if key in known and value is not None})

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> "Target":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise MigrationError("target information is not a JSON object")
        return cls.from_dict(data)

    def is_empty(self) -> bool:
        """True when none of the descriptive fields are known."""
        return not any(
            (self.name, self.url, self.owner, self.repo, self.branch, self.origin, self.source)
        )


@dataclass
class SnykProject:
    """A project as listed by the Snyk projects API."""

    id: str
    name: str = ""
    type: str = ""
    origin: str = ""
    target: Target = field(default_factory=Target)
    target_reference: str = ""


@dataclass
class SnykIgnore:
    """An ignore as returned by the Snyk v1 ignores API."""

    id: str
    reason: str = ""
    reason_type: str = ""
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    path: list[str] = field(default_factory=list)
    ignored_by: dict[str, str] = field(default_factory=dict)
    disregard_if_fixable: bool = False
    ignore_scope: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reason": self.reason,
            "reasonType": self.reason_type,
            "created": self.created_at.isoformat() if self.created_at else None,
            "expires": self.expires_at.isoformat() if self.expires_at else None,
            "path": [{"module": module} for module in self.path],
            "ignoredBy": dict(self.ignored_by),
            "disregardIfFixable": self.disregard_if_fixable,
            "ignoreScope": self.ignore_scope,
        }


@dataclass
class SastIssue:
    """A code-analysis issue as returned by the Snyk REST issues API."""

    id: str
    type: str = "issue"
    attributes: dict[str, Any] = field(default_factory=dict)
    relationships: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.attributes.get("key", "") or ""

    @property
    def key_asset(self) -> str:
        return self.attributes.get("key_asset", "") or ""

    @property
    def scan_item_id(self) -> str:
        scan_item = self.relationships.get("scan_item") or {}
        data = scan_item.get("data") or {}
        return data.get("id", "") or ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "attributes": self.attributes,
            "relationships": self.relationships,
        }


@dataclass
class ActionData:
    ignore_type: str = ""
    reason: str = ""
    expires: Optional[datetime] = None


@dataclass
class Action:
    data: ActionData = field(default_factory=ActionData)


@dataclass
class Condition:
    field: str
    operator: str
    value: str


@dataclass
class ConditionsGroup:
    logical_operator: str = "and"
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class CreatePolicyAttributes:
    """Attributes of a policy to be created through the policies API."""

    name: str
    action_type: str = "ignore"
    action: Action = field(default_factory=Action)
    conditions_group: ConditionsGroup = field(default_factory=ConditionsGroup)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "ignore_type": self.action.data.ignore_type,
            "reason": self.action.data.reason,
        }
        if self.action.data.expires is not None:
            data["expires"] = self.action.data.expires.isoformat()
        return {
            "name": self.name,
            "action_type": self.action_type,
            "action": {"data": data},
            "conditions_group": {
                "logical_operator": self.conditions_group.logical_operator,
                "conditions": [
                    {"field": c.field, "operator": c.operator, "value": c.value}
                    for c in self.conditions_group.conditions
                ],
            },
        }


@dataclass
class Policy:
    """A policy that exists on the Snyk side."""

    id: str
    attributes: dict[str, Any] = field(default_factory=dict)


# --------------------------------------------------------------------------
# Records kept in the migration database
# --------------------------------------------------------------------------


@dataclass
class StoredIgnore:
    id: str
    issue_id: str = ""
    org_id: str = ""
    project_id: str = ""
    reason: str = ""
    ignore_type: str = ""
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    asset_key: str = ""
    original_state: str = ""
    deleted_at: Optional[datetime] = None
    migrated_at: Optional[datetime] = None
    policy_id: Optional[str] = None
    internal_policy_id: Optional[str] = None
    selected_for_migration: bool = False


@dataclass
class StoredIssue:
    id: str
    org_id: str = ""
    project_id: str = ""
    asset_key: str = ""
    project_key: str = ""
    original_state: str = ""


@dataclass
class StoredProject:
    id: str
    org_id: str = ""
    name: str = ""
    target_information: str = ""
    is_cli_project: bool = False
    retested_at: Optional[datetime] = None


@dataclass
class PlannedPolicy:
    internal_id: str
    org_id: str = ""
    asset_key: str = ""
    policy_type: str = ""
    reason: str = ""
    expires_at: Optional[datetime] = None
    source_ignores: str = ""
    external_id: Optional[str] = None
    created_at: Optional[datetime] = None


# --------------------------------------------------------------------------
# SQLite storage
# --------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS ignores (
    id TEXT PRIMARY KEY,
    issue_id TEXT,
    org_id TEXT,
    project_id TEXT,
    reason TEXT,
    ignore_type TEXT,
    created_at TIMESTAMP,
    expires_at TIMESTAMP,
    asset_key TEXT DEFAULT '',
    original_state TEXT,
    deleted_at TIMESTAMP,
    migrated_at TIMESTAMP,
    policy_id TEXT,
    internal_policy_id TEXT,
    selected_for_migration INTEGER DEFAULT 0
);
CREATE TABLE IF NOT EXISTS issues (
    id TEXT PRIMARY KEY,
    org_id TEXT,
    project_id TEXT,
    asset_key TEXT,
    project_key TEXT,
    original_state TEXT
);
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    org_id TEXT,
    name TEXT,
    target_information TEXT,
    is_cli_project INTEGER DEFAULT 0,
    retested_at TIMESTAMP
);
CREATE TABLE IF NOT EXISTS policies (
    internal_id TEXT PRIMARY KEY,
    org_id TEXT,
    asset_key TEXT,
    policy_type TEXT,
    reason TEXT,
    expires_at TIMESTAMP,
    source_ignores TEXT,
    external_id TEXT,
    created_at TIMESTAMP
);
CREATE TABLE IF NOT EXISTS collection_metadata (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    completed_at TIMESTAMP,
    collection_version TEXT,
    api_version TEXT
);
"""

_IGNORE_COLUMNS = (
    "id, issue_id, org_id, project_id, reason, ignore_type, created_at, expires_at, "
    "asset_key, original_state, deleted_at, migrated_at, policy_id, internal_policy_id, "
    "selected_for_migration"
)
_POLICY_COLUMNS = (
    "internal_id, org_id, asset_key, policy_type, reason, expires_at, source_ignores, "
    "external_id, created_at"
)


def _adapt(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _params(args: tuple[Any, ...]) -> tuple[Any, ...]:
    return tuple(_adapt(arg) for arg in args)


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _ignore_from_row(row: tuple[Any, ...]) -> StoredIgnore:
    return StoredIgnore(
        id=row[0],
        issue_id=row[1] or "",
        org_id=row[2] or "",
        project_id=row[3] or "",
        reason=row[4] or "",
        ignore_type=row[5] or "",
        created_at=_parse_time(row[6]),
        expires_at=_parse_time(row[7]),
        asset_key=row[8] or "",
        original_state=row[9] or "",
        deleted_at=_parse_time(row[10]),
        migrated_at=_parse_time(row[11]),
        policy_id=row[12],
        internal_policy_id=row[13],
        selected_for_migration=bool(row[14]),
    )


def _policy_from_row(row: tuple[Any, ...]) -> PlannedPolicy:
    return PlannedPolicy(
        internal_id=row[0],
        org_id=row[1] or "",
        asset_key=row[2] or "",
        policy_type=row[3] or "",
        reason=row[4] or "",
        expires_at=_parse_time(row[5]),
        source_ignores=row[6] or "",
        external_id=row[7],
        created_at=_parse_time(row[8]),
    )


class Transaction:
    """An explicit transaction on a migration database connection."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection
        self._conn.execute("BEGIN")

    def exec(self, query: str, *args: Any) -> sqlite3.Cursor:
        return self._conn.execute(query, _params(args))

    def commit(self) -> None:
        self._conn.execute("COMMIT")

    def rollback(self) -> None:
        self._conn.execute("ROLLBACK")

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()


class Database:
    """SQLite store for gathered ignores, issues, projects and planned policies."""

    def __init__(self, path: str = ":memory:") -> None:
        self.path = path
        try:
            self._conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise MigrationError(f"failed to open database {path}: {exc}") from exc

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_ignores_by_org_id(self, org_id: str) -> list[StoredIgnore]:
        rows = self.query(f"SELECT {_IGNORE_COLUMNS} FROM ignores WHERE org_id = ? ORDER BY rowid", org_id)
        return [_ignore_from_row(row) for row in rows]

    def insert_ignore(self, ignore: StoredIgnore) -> None:
        self.exec(
            f"""
            INSERT INTO ignores ({_IGNORE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                issue_id = excluded.issue_id,
                org_id = excluded.org_id,
                project_id = excluded.project_id,
                reason = excluded.reason,
                ignore_type = excluded.ignore_type,
                created_at = excluded.created_at,
                expires_at = excluded.expires_at,
                original_state = excluded.original_state
            """,
            ignore.id,
            ignore.issue_id,
            ignore.org_id,
            ignore.project_id,
            ignore.reason,
            ignore.ignore_type,
            ignore.created_at,
            ignore.expires_at,
            ignore.asset_key,
            ignore.original_state,
            ignore.deleted_at,
            ignore.migrated_at,
            ignore.policy_id,
            ignore.internal_policy_id,
            int(ignore.selected_for_migration),
        )

    def insert_issue(self, issue: StoredIssue) -> None:
        self.exec(
            """
            INSERT INTO issues (id, org_id, project_id, asset_key, project_key, original_state)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                org_id = excluded.org_id,
                project_id = excluded.project_id,
                asset_key = excluded.asset_key,
                project_key = excluded.project_key,
                original_state = excluded.original_state
            """,
            issue.id,
            issue.org_id,
            issue.project_id,
            issue.asset_key,
            issue.project_key,
            issue.original_state,
        )

    def insert_project(self, project: StoredProject) -> None:
        self.exec(
            """
            INSERT INTO projects (id, org_id, name, target_information, is_cli_project, retested_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                org_id = excluded.org_id,
                name = excluded.name,
                target_information = excluded.target_information,
                is_cli_project = excluded.is_cli_project
            """,
            project.id,
            project.org_id,
            project.name,
            project.target_information,
            int(project.is_cli_project),
            project.retested_at,
        )

    def insert_policy(self, policy: PlannedPolicy) -> None:
        self.exec(
            f"INSERT INTO policies ({_POLICY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            policy.internal_id,
            policy.org_id,
            policy.asset_key,
            policy.policy_type,
            policy.reason,
            policy.expires_at,
            policy.source_ignores,
            policy.external_id,
            policy.created_at,
        )

    def get_issues_by_org_id(self, org_id: str) -> list[StoredIssue]:
        rows = self.query(
            "SELECT id, org_id, project_id, asset_key, project_key, original_state "
            "FROM issues WHERE org_id = ? ORDER BY rowid",
            org_id,
        )
        return [
            StoredIssue(
                id=row[0],
                org_id=row[1] or "",
                project_id=row[2] or "",
                asset_key=row[3] or "",
                project_key=row[4] or "",
                original_state=row[5] or "",
            )
            for row in rows
        ]

    def get_projects_by_org_id(self, org_id: str) -> list[StoredProject]:
        rows = self.query(
            "SELECT id, org_id, name, target_information, is_cli_project, retested_at "
            "FROM projects WHERE org_id = ? ORDER BY rowid",
            org_id,
        )
        return [
            StoredProject(
                id=row[0],
                org_id=row[1] or "",
                name=row[2] or "",
                target_information=row[3] or "",
                is_cli_project=bool(row[4]),
                retested_at=_parse_time(row[5]),
            )
            for row in rows
        ]

    def get_policies_by_org_id(self, org_id: str) -> list[PlannedPolicy]:
        rows = self.query(f"SELECT {_POLICY_COLUMNS} FROM policies WHERE org_id = ? ORDER BY rowid", org_id)
        return [_policy_from_row(row) for row in rows]

    def update_collection_metadata(
        self, completed_at: datetime, collection_version: str, api_version: str
    ) -> None:
        self.exec(
            """
            INSERT INTO collection_metadata (id, completed_at, collection_version, api_version)
            VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                completed_at = excluded.completed_at,
                collection_version = excluded.collection_version,
                api_version = excluded.api_version
            """,
            completed_at,
            collection_version,
            api_version,
        )

    def exec(self, query: str, *args: Any) -> sqlite3.Cursor:
        return self._conn.execute(query, _params(args))

    def query_row(self, query: str, *args: Any) -> tuple[Any, ...]:
        row = self._conn.execute(query, _params(args)).fetchone()
        if row is None:
            raise MigrationError("no rows in result set")
        return tuple(row)

    def query(self, query: str, *args: Any) -> list[tuple[Any, ...]]:
        return [tuple(row) for row in self._conn.execute(query, _params(args)).fetchall()]

    def begin(self) -> Transaction:
        return Transaction(self._conn)

    def close(self) -> None:
        self._conn.close()


# --------------------------------------------------------------------------
# Snyk API operations used by the commands
# --------------------------------------------------------------------------


@runtime_checkable
class Client(Protocol):
    """The Snyk API operations the migration commands rely on."""

    def get_projects(self, org_id: str) -> list[SnykProject]:
        """Return the code-analysis projects of an organisation."""

    def get_ignores(self, org_id: str, project_id: str) -> list[SnykIgnore]:
        """Return the ignores of a project."""

    def get_project_target(self, org_id: str, target_id: str) -> Target:
        """Return a target by its id."""

    def get_sast_issues(self, org_id: str, project_id: str) -> list[SastIssue]:
        """Return code-analysis issues; an empty project id means the whole organisation."""

    def create_policy(
        self, org_id: str, attributes: CreatePolicyAttributes, meta: Optional[dict[str, Any]]
    ) -> Policy:
        """Create a policy and return it."""

    def retest_project(self, org_id: str, target: Target) -> None:
        """Trigger a new test of the given target."""

    def delete_ignore(self, org_id: str, project_id: str, ignore_id: str) -> None:
        """Delete an ignore from a project."""