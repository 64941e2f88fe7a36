from datetime import datetime

import pytest

from cci_migrator.cleanup import CleanupCommand
from cci_migrator.models import Database, MigrationError, StoredIgnore

ORG = "org123"


class FakeTransaction:
    def __init__(self, owner, exec_error=None, commit_error=None):
        self.owner = owner
        self.exec_error = exec_error
        self.commit_error = commit_error
        self.exec_calls = []

    def exec(self, query, *args):
        self.exec_calls.append((query, args))
        if self.exec_error is not None:
            raise self.exec_error

    def commit(self):
        self.owner.commits += 1
        if self.commit_error is not None:
            raise self.commit_error

    def rollback(self):
        self.owner.rollbacks += 1


class FakeDB:
    def __init__(self, rows=None, query_error=None, tx_factory=None, count=2):
        self.rows = rows or []
        self.query_error = query_error
        self.tx_factory = tx_factory or (lambda owner, n: FakeTransaction(owner))
        self.count = count
        self.begins = 0
        self.commits = 0
        self.rollbacks = 0

    def query(self, query, *args):
        if self.query_error is not None:
            raise self.query_error
        return list(self.rows)

    def begin(self):
        self.begins += 1
        return self.tx_factory(self, self.begins)

    def query_row(self, query, *args):
        return (self.count,)


class FakeClient:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def delete_ignore(self, org_id, project_id, ignore_id):
        self.calls.append((org_id, project_id, ignore_id))
        if self.error is not None:
            raise self.error


def run(db, client):
    return CleanupCommand(db, client, ORG, retry_delay=0).execute()


def test_successful_cleanup_with_transactions():
    db = FakeDB(rows=[("ignore1", "project1"), ("ignore2", "project2")])
    client = FakeClient()

    deleted = run(db, client)

    assert deleted == 2
    assert db.begins == 2
    assert db.commits == 2
    assert db.rollbacks == 0
    assert client.calls == [(ORG, "project1", "ignore1"), (ORG, "project2", "ignore2")]


def test_api_deletion_failures_open_no_transactions():
    db = FakeDB(rows=[("ignore1", "project1"), ("ignore2", "project2")])
    client = FakeClient(error=RuntimeError("API delete failed"))

    deleted = run(db, client)

    assert deleted == 0
    assert db.begins == 0
    assert db.commits == 0
    assert db.rollbacks == 0


def test_transaction_retried_on_locked_error():
    def factory(owner, n):
        if n == 1:
            locked = RuntimeError("database is locked")
            return FakeTransaction(owner, exec_error=locked, commit_error=locked)
        return FakeTransaction(owner)

    db = FakeDB(rows=[("ignore1", "project1")], tx_factory=factory, count=1)

    deleted = run(db, FakeClient())

    assert deleted == 1
    assert db.begins == 2
    assert db.commits == 1
    assert db.rollbacks == 1


def test_initial_query_failure_raises():
    db = FakeDB(query_error=RuntimeError("query failed"))
    with pytest.raises(MigrationError, match="failed to get ignores to delete"):
        run(db, FakeClient())
    assert db.begins == 0


def test_permanent_exec_error_is_not_retried():
    def factory(owner, n):
        return FakeTransaction(owner, exec_error=RuntimeError("constraint failed"))

    db = FakeDB(rows=[("ignore1", "project1")], tx_factory=factory)

    assert run(db, FakeClient()) == 0
    assert db.begins == 1
    assert db.rollbacks == 1
    assert db.commits == 0


def test_lock_errors_give_up_after_three_attempts():
    def factory(owner, n):
        return FakeTransaction(owner, commit_error=RuntimeError("database is locked"))

    db = FakeDB(rows=[("ignore1", "project1")], tx_factory=factory)

    assert run(db, FakeClient()) == 0
    assert db.begins == 3
    assert db.commits == 3


def test_begin_failure_is_retried():
    def factory(owner, n):
        if n < 3:
            raise RuntimeError("cannot begin")
        return FakeTransaction(owner)

    db = FakeDB(rows=[("ignore1", "project1")], tx_factory=factory)

    assert run(db, FakeClient()) == 1
    assert db.begins == 3
    assert db.commits == 1


def test_cleanup_marks_migrated_ignores_deleted_in_real_database():
    with Database(":memory:") as db:
        db.insert_ignore(
            StoredIgnore(id="m1", org_id=ORG, project_id="p1", migrated_at=datetime(2024, 1, 1))
        )
        db.insert_ignore(StoredIgnore(id="n1", org_id=ORG, project_id="p1"))
        db.insert_ignore(
            StoredIgnore(id="other", org_id="another-org", project_id="p2", migrated_at=datetime(2024, 1, 1))
        )
        client = FakeClient()

        deleted = CleanupCommand(db, client, ORG, retry_delay=0).execute()

        stored = {i.id: i for i in db.get_ignores_by_org_id(ORG)}
        assert deleted == 1
        assert client.calls == [(ORG, "p1", "m1")]
        assert stored["m1"].deleted_at is not None
        assert stored["n1"].deleted_at is None

        assert CleanupCommand(db, client, ORG, retry_delay=0).execute() == 0
        assert len(client.calls) == 1