# cci_migrator

`cci_migrator` moves SAST ignores from project-level ignores to
organisation-wide ignore policies keyed on each finding's asset key. The work
is split into stages. Every stage reads from and writes to a local SQLite
tracking database, so a migration can be stopped and resumed.

## Stages

Each stage is a dataclass taking `(db, client, org_id, debug=False)` and run
with `execute()`.

| Stage | Class | What it does | Returns |
|-------|-------|--------------|---------|
| gather | `cci_migrator.gather.GatherCommand` | Fetches SAST projects and their targets, the ignores of each project and all SAST issues of the organisation. Stores them, then fills in each ignore's asset key from the issue whose project key matches the ignore. Projects of origin `cli` are flagged so they are never retested. Records collection metadata (version `2.0.0`, API `v1`). | `None` |
| print | `GatherCommand.print()` | Logs the gathered ignores, issues and projects. When there are 20 or more of a kind, only the first 10 are listed. | `None` |
| plan | `cci_migrator.plan.PlanCommand` | Groups ignores that have an asset key by that key and selects one per key: `wont-fix` over `not-vulnerable` over `temporary` (unknown types count as `temporary`), earliest creation date within a type. Records one planned policy per key whose reason lists every source ignore, and links all source ignores to it. | number of policies planned |
| print-plan | `PlanCommand.print_plan()` | Logs the planned policies. | number of ignores selected for migration |
| execute | `cci_migrator.execute.ExecuteCommand` | Creates every planned policy without an external id through the client, named `Migrated policy for <asset key>` with the condition `snyk/asset/finding/v1 includes <asset key>`. Stores the external id and marks the linked ignores as migrated. The whole run is limited by `timeout` (default 600 seconds). | number of policies created |
| retest | `cci_migrator.retest.RetestCommand` | Retests every non-CLI project that has migrated ignores and has not been retested yet. When a project's stored target is empty, the target is looked up through the client and stored. | number of projects retested |
| cleanup | `cci_migrator.cleanup.CleanupCommand` | Deletes every migrated, not yet deleted ignore through the client and records the deletion, then logs overall progress. | number of ignores deleted |

The database updates in `execute` and `cleanup` run in a transaction that is
retried up to three times when the error mentions `locked`; the pause between
attempts grows with `retry_delay` (default 0.5 seconds).

All progress is reported through the standard `logging` module under the
`cci_migrator.*` loggers; configure logging to see it.

## Storage and client

`cci_migrator.models.Database(path=":memory:")` is the SQLite tracking store.
It creates its tables on opening and offers inserts and lookups by
organisation (`insert_ignore`, `get_ignores_by_org_id`, `insert_policy`,
`get_policies_by_org_id`, ...), raw `exec`, `query` and `query_row`, and
`begin()`, which returns a `Transaction`. It can be used as a context manager.

`cci_migrator.models.Client` is a protocol describing the API calls the stages
need: `get_projects`, `get_ignores`, `get_project_target`, `get_sast_issues`,
`create_policy`, `retest_project` and `delete_ignore`. The records passed
through it (`SnykProject`, `SnykIgnore`, `SastIssue`, `Target`,
`CreatePolicyAttributes`, `Policy`) are dataclasses in the same module.

## Usage

```python
import logging

from cci_migrator.models import Database
from cci_migrator.gather import GatherCommand
from cci_migrator.plan import PlanCommand
from cci_migrator.execute import ExecuteCommand
from cci_migrator.retest import RetestCommand
from cci_migrator.cleanup import CleanupCommand

logging.basicConfig(level=logging.INFO)

org_id = "example-org"
client = make_client()    # your implementation of models.Client

with Database("./cci-migration.db") as db:
    GatherCommand(db, client, org_id).execute()
    PlanCommand(db, client, org_id).execute()
    PlanCommand(db, client, org_id).print_plan()
    ExecuteCommand(db, client, org_id).execute()
    RetestCommand(db, client, org_id).execute()
    CleanupCommand(db, client, org_id).execute()
```

Back up the tracking database before a destructive stage:

```python
from cci_migrator.backup import BackupCommand, RestoreCommand

# Copies the file to ./backups/cci-migration-YYYYMMDD-HHMMSS.db and returns that path.
BackupCommand(db, "./cci-migration.db", "./backups").execute()

# Restores the most recently modified .db file in ./backups (or a given
# backup_file, relative to the backup directory unless absolute). The current
# file is first copied to <db_path>.before-restore.<timestamp>.
RestoreCommand(db, "./cci-migration.db", "./backups").execute()
```

`RestoreCommand` closes the database it is given; open a new `Database` on the
path afterwards.

## Errors

A stage raises `cci_migrator.models.MigrationError` when it cannot go on, for
example when the project listing or issue listing fails, the backup directory
cannot be read, or `execute` times out. A failure on a single item, such as
one policy, project or ignore, is logged as a warning and counted in the stage
summary, and the run carries on with the remaining items.

## What is not included

- No API client: the package defines only the `Client` protocol, and you must
  supply an implementation that talks to the service.
- No command-line program: the stages are run from Python as shown above.

## Tests

The tests use pytest. Install the `test` extra to get it.