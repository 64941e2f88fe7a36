import json
from datetime import datetime, timedelta

import pytest

from cci_migrator.models import (
    Action,
    ActionData,
    Condition,
    ConditionsGroup,
    CreatePolicyAttributes,
    Database,
    MigrationError,
    PlannedPolicy,
    SastIssue,
    SnykIgnore,
    StoredIgnore,
    StoredIssue,
    StoredProject,
    Target,
)


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


def test_target_json_round_trip():
    target = Target(id="t1", name="test-repo", branch="main", integration_id="int-1")
    assert Target.from_json(target.to_json()) == target


def test_target_from_dict_ignores_unknown_keys():
    target = Target.from_dict({"name": "test-repo", "unknown": "x"})
    assert target.name == "test-repo"
    assert target.branch == ""


def test_target_from_json_rejects_non_object():
    with pytest.raises(MigrationError):
        Target.from_json("[1, 2]")


def test_target_is_empty():
    assert Target().is_empty()
    assert Target(id="only-id", integration_id="int").is_empty()
    assert not Target(branch="main").is_empty()


def test_snyk_ignore_to_dict_is_serialisable():
    created = datetime(2024, 1, 2, 3, 4, 5)
    ignore = SnykIgnore(
        id="test-ignore-id",
        reason="test reason",
        reason_type="wont-fix",
        created_at=created,
        path=["test-module"],
        ignored_by={"id": "test-user-id", "email": "test@example.com"},
        ignore_scope="project",
    )
    data = json.loads(json.dumps(ignore.to_dict()))
    assert data["id"] == "test-ignore-id"
    assert data["reasonType"] == "wont-fix"
    assert data["path"] == [{"module": "test-module"}]
    assert datetime.fromisoformat(data["created"]) == created
    assert data["expires"] is None


def test_sast_issue_properties():
    issue = SastIssue(
        id="test-ignore-id",
        attributes={"key": "test-key", "key_asset": "test-asset-key"},
        relationships={"scan_item": {"data": {"id": "test-project-id", "type": "scan_item"}}},
    )
    assert issue.key == "test-key"
    assert issue.key_asset == "test-asset-key"
    assert issue.scan_item_id == "test-project-id"
    assert issue.to_dict()["attributes"]["key"] == "test-key"


def test_sast_issue_missing_relationships():
    issue = SastIssue(id="x")
    assert issue.scan_item_id == ""
    assert issue.key_asset == ""


def test_create_policy_attributes_to_dict():
    attrs = CreatePolicyAttributes(
        name="Migrated policy for key-1",
        action=Action(data=ActionData(ignore_type="wont-fix", reason="why")),
        conditions_group=ConditionsGroup(
            conditions=[Condition(field="snyk/asset/finding/v1", operator="includes", value="key-1")]
        ),
    )
    data = attrs.to_dict()
    assert data["action_type"] == "ignore"
    assert data["action"]["data"] == {"ignore_type": "wont-fix", "reason": "why"}
    assert data["conditions_group"]["logical_operator"] == "and"
    assert data["conditions_group"]["conditions"][0]["value"] == "key-1"


def test_create_policy_attributes_includes_expiry():
    expires = datetime(2030, 5, 6)
    attrs = CreatePolicyAttributes(name="n", action=Action(data=ActionData(expires=expires)))
    assert datetime.fromisoformat(attrs.to_dict()["action"]["data"]["expires"]) == expires


def test_insert_and_get_ignore(db):
    created = datetime(2024, 1, 1, 12, 0, 0)
    ignore = StoredIgnore(
        id="i1", issue_id="i1", org_id="org", project_id="p1", reason="r",
        ignore_type="wont-fix", created_at=created, asset_key="ak", original_state="{}",
    )
    db.insert_ignore(ignore)
    assert db.get_ignores_by_org_id("org") == [ignore]
    assert db.get_ignores_by_org_id("other") == []


def test_reinsert_ignore_is_idempotent_and_keeps_migration_state(db):
    ignore = StoredIgnore(id="i1", org_id="org", created_at=datetime(2024, 1, 1))
    db.insert_ignore(ignore)
    migrated = datetime(2024, 2, 1)
    db.exec("UPDATE ignores SET migrated_at = ? WHERE id = ?", migrated, "i1")
    db.insert_ignore(ignore)
    stored = db.get_ignores_by_org_id("org")
    assert len(stored) == 1
    assert stored[0].migrated_at == migrated


def test_issue_and_project_round_trip(db):
    issue = StoredIssue(id="is1", org_id="org", project_id="p", asset_key="a", project_key="k", original_state="{}")
    project = StoredProject(id="p", org_id="org", name="n", target_information="{}", is_cli_project=True)
    db.insert_issue(issue)
    db.insert_issue(issue)
    db.insert_project(project)
    assert db.get_issues_by_org_id("org") == [issue]
    assert db.get_projects_by_org_id("org") == [project]


def test_policy_round_trip(db):
    policy = PlannedPolicy(
        internal_id="policy-1", org_id="org", asset_key="a", policy_type="temporary",
        reason="r", expires_at=datetime(2030, 1, 1), source_ignores="i1,i2",
    )
    db.insert_policy(policy)
    assert db.get_policies_by_org_id("org") == [policy]


def test_query_row_without_rows_raises(db):
    with pytest.raises(MigrationError):
        db.query_row("SELECT id FROM ignores WHERE id = ?", "missing")


def test_query_row_count(db):
    db.insert_ignore(StoredIgnore(id="a", org_id="org"))
    db.insert_ignore(StoredIgnore(id="b", org_id="org"))
    assert db.query_row("SELECT COUNT(*) FROM ignores WHERE org_id = ?", "org") == (2,)


def test_transaction_commit_and_rollback(db):
    db.insert_ignore(StoredIgnore(id="a", org_id="org"))
    now = datetime.now()

    tx = db.begin()
    tx.exec("UPDATE ignores SET deleted_at = ? WHERE id = ?", now, "a")
    tx.rollback()
    assert db.get_ignores_by_org_id("org")[0].deleted_at is None

    tx = db.begin()
    tx.exec("UPDATE ignores SET deleted_at = ? WHERE id = ?", now, "a")
    tx.commit()
    assert db.get_ignores_by_org_id("org")[0].deleted_at == now


def test_transaction_context_manager_rolls_back_on_error(db):
    db.insert_ignore(StoredIgnore(id="a", org_id="org"))
    with pytest.raises(RuntimeError):
        with db.begin() as tx:
            tx.exec("UPDATE ignores SET policy_id = ? WHERE id = ?", "ext", "a")
            raise RuntimeError("boom")
    assert db.get_ignores_by_org_id("org")[0].policy_id is None


def test_update_collection_metadata_keeps_single_row(db):
    first = datetime(2024, 1, 1)
    db.update_collection_metadata(first, "2.0.0", "v1")
    db.update_collection_metadata(first + timedelta(days=1), "2.0.0", "v1")
    rows = db.query("SELECT collection_version, api_version FROM collection_metadata")
    assert rows == [("2.0.0", "v1")]