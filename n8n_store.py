"""
Direct access to n8n's Postgres database.

n8n does not report the id it assigns to an imported workflow, and it creates
its tables lazily on first boot, so deployment reads the database itself:

- wait_for_schema_element() blocks until a table exists (plus a settling delay)
- resolve_workflow_id() looks up the newest workflow_entity row for a name
- PostgresStore.set_workflow_active() is the direct-update activation fallback
- PostgresStore.dump() / restore() back the `services.py backup` and `restore` commands

Queries run through ``docker exec -i <container> psql`` with the SQL on stdin.
Values are passed as psql variables (``-v name=value``) and referenced as
``:'name'`` (literal) or ``:"name"`` (identifier), so psql does the quoting.
"""

import logging
import subprocess
import time
from typing import Dict, List, Optional

from stack_config import RetryBudget, StackConfig
from stack_errors import IdentifierNotFound, SchemaTimeout, StoreError

logger = logging.getLogger(__name__)

PSQL_TIMEOUT = 30
DUMP_TIMEOUT = 600

TABLE_EXISTS_SQL = "SELECT to_regclass(:'element') IS NOT NULL;"

LATEST_WORKFLOW_ID_SQL = (
    "SELECT id FROM :\"workflow_table\" "
    "WHERE name = :'workflow_name' "
    "ORDER BY \"createdAt\" DESC LIMIT 1;"
)

ACTIVATE_WORKFLOW_SQL = (
    "UPDATE :\"workflow_table\" SET active = true "
    "WHERE id::text = :'workflow_id' RETURNING id;"
)

WORKFLOW_ACTIVE_SQL = (
    "SELECT active FROM :\"workflow_table\" WHERE id::text = :'workflow_id';"
)


class PostgresStore:
    """psql-over-docker-exec client for the n8n database.

    container, user and db default to the n8n database from the config; pass
    them to reach another database, e.g. the backend's for backups.
    """

    def __init__(self, config: StackConfig, container: Optional[str] = None,
                 user: Optional[str] = None, db: Optional[str] = None):
        self.container = container or config.postgres_container
        self.user = user or config.postgres_user
        self.db = db or config.postgres_db
        self.workflow_table = config.workflow_table

    def _command(self, variables: Dict[str, str]) -> List[str]:
        cmd = [
            "docker", "exec", "-i", self.container,
            "psql", "-X", "-q", "-t", "-A",
            "-U", self.user, "-d", self.db,
            "-v", "ON_ERROR_STOP=1",
        ]
        for name, value in variables.items():
            cmd.extend(["-v", f"{name}={value}"])
        # Variables are only interpolated in script input, not with -c
        cmd.extend(["-f", "-"])
        return cmd

    def query(self, sql: str, **variables: str) -> List[str]:
        """
        Run one SQL statement and return the non-empty output rows.

        Raises:
            StoreError: psql failed, timed out, or docker is unavailable
        """
        cmd = self._command(variables)
        try:
            result = subprocess.run(
                cmd,
                input=sql,
                capture_output=True,
                text=True,
                timeout=PSQL_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            raise StoreError(f"psql timed out after {PSQL_TIMEOUT} seconds", detail=sql)
        except FileNotFoundError as e:
            raise StoreError("docker executable not found", detail=str(e))

        if result.returncode != 0:
            raise StoreError(
                f"psql exited with code {result.returncode}",
                detail=(result.stderr or result.stdout).strip() or None,
            )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def table_exists(self, table: str) -> bool:
        rows = self.query(TABLE_EXISTS_SQL, element=f"public.{table}")
        return bool(rows) and rows[0] == "t"

    def latest_workflow_id(self, name: str) -> Optional[str]:
        rows = self.query(
            LATEST_WORKFLOW_ID_SQL,
            workflow_table=self.workflow_table,
            workflow_name=name,
        )
        return rows[0] if rows else None

    def set_workflow_active(self, workflow_id: str) -> int:
        """Set active = true directly; returns the number of rows updated."""
        rows = self.query(
            ACTIVATE_WORKFLOW_SQL,
            workflow_table=self.workflow_table,
            workflow_id=workflow_id,
        )
        return len(rows)

    def workflow_active(self, workflow_id: str) -> Optional[bool]:
        rows = self.query(
            WORKFLOW_ACTIVE_SQL,
            workflow_table=self.workflow_table,
            workflow_id=workflow_id,
        )
        if not rows:
            return None
        return rows[0] == "t"

    def _run(self, tool: str, cmd: List[str], sql: Optional[str], timeout: int) -> str:
        try:
            result = subprocess.run(cmd, input=sql, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise StoreError(f"{tool} timed out after {timeout} seconds")
        except FileNotFoundError as e:
            raise StoreError("docker executable not found", detail=str(e))

        if result.returncode != 0:
            raise StoreError(
                f"{tool} on {self.container}/{self.db} exited with code {result.returncode}",
                detail=(result.stderr or result.stdout).strip() or None,
            )
        return result.stdout

    def dump(self) -> str:
        """Return a plain-SQL pg_dump of the whole database."""
        cmd = ["docker", "exec", self.container, "pg_dump", "-U", self.user, self.db]
        return self._run("pg_dump", cmd, None, DUMP_TIMEOUT)

    def restore(self, sql: str) -> None:
        """Replay a plain-SQL dump.

        Runs without ON_ERROR_STOP: a dump replayed into a live database
        reports objects that already exist, and psql carries on past them.
        """
        cmd = ["docker", "exec", "-i", self.container, "psql", "-X", "-q", "-U", self.user, "-d", self.db, "-f", "-"]
        self._run("psql", cmd, sql, DUMP_TIMEOUT)


def wait_for_schema_element(store, element_name: str, budget: RetryBudget,
                            settle_delay: float = 0) -> None:
    """
    Poll the store catalog until `element_name` exists, then wait `settle_delay`.

    n8n runs its migrations after the container reports healthy, and keeps
    wiring itself up for a few seconds after the table appears, hence the
    extra settling sleep. Query errors (Postgres still starting) count as
    "not yet".

    Raises:
        SchemaTimeout: the table did not appear within the budget
    """
    last_error = None
    for attempt in range(1, budget.max_attempts + 1):
        try:
            if store.table_exists(element_name):
                logger.info("Table %s present after %d poll(s)", element_name, attempt)
                if settle_delay:
                    time.sleep(settle_delay)
                return
            last_error = None
        except StoreError as e:
            last_error = e.detail or e.message

        logger.debug(
            "Table %s not present yet (attempt %d/%d)%s",
            element_name, attempt, budget.max_attempts,
            f": {last_error}" if last_error else "",
        )
        if attempt < budget.max_attempts:
            time.sleep(budget.delay)

    raise SchemaTimeout(
        f"table {element_name} did not appear after {budget.max_attempts} polls",
        detail=last_error,
    )


def resolve_workflow_id(store, name: str) -> str:
    """
    Return the id of the most recently created workflow named `name`.

    Raises:
        IdentifierNotFound: no row matches the name
    """
    workflow_id = store.latest_workflow_id(name)
    workflow_id = workflow_id.strip() if workflow_id else ""
    if not workflow_id:
        raise IdentifierNotFound(f"no workflow named '{name}' found in the n8n database")
    logger.info("Resolved workflow '%s' to id %s", name, workflow_id)
    return workflow_id
