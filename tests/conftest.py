"""Shared fixtures: fake n8n database and fake n8n CLI.

The deployment modules live in the project root, not inside a package, so the
root is put on sys.path for the tests.
"""

import subprocess
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from stack_config import RetryBudget, StackConfig  # noqa: E402
from stack_errors import StoreError  # noqa: E402


class FakeStore:
    """In-memory stand-in for n8n's workflow_entity table."""

    def __init__(self, table_ready_after=1):
        self.rows = []
        self.table_ready_after = table_ready_after
        self.table_checks = 0
        self.direct_updates = []
        self._next_id = 1
        self._clock = datetime(2024, 1, 1)

    def add_workflow(self, name, active=False, created_at=None, workflow_id=None):
        self._clock += timedelta(seconds=1)
        row = {
            "id": workflow_id or str(self._next_id),
            "name": name,
            "active": active,
            "created_at": created_at or self._clock,
        }
        self._next_id += 1
        self.rows.append(row)
        return row

    def table_exists(self, table):
        self.table_checks += 1
        return self.table_checks >= self.table_ready_after

    def latest_workflow_id(self, name):
        matches = [r for r in self.rows if r["name"] == name]
        if not matches:
            return None
        return max(matches, key=lambda r: r["created_at"])["id"]

    def set_workflow_active(self, workflow_id):
        self.direct_updates.append(workflow_id)
        updated = 0
        for row in self.rows:
            if row["id"] == workflow_id:
                row["active"] = True
                updated += 1
        return updated

    def workflow_active(self, workflow_id):
        for row in self.rows:
            if row["id"] == workflow_id:
                return row["active"]
        return None


class FakeN8nCli:
    """Fake n8n admin CLI backed by a FakeStore.

    Import creates a row the first time a name is seen and reports
    "already exists" afterwards, like an n8n instance with a unique-name check.
    """

    def __init__(self, store, definitions=None, update_returncode=0, import_output=None):
        self.store = store
        self.definitions = definitions or {}
        self.update_returncode = update_returncode
        self.import_output = import_output
        self.calls = []

    def import_workflow(self, container_path):
        self.calls.append(("import", container_path))
        args = ["docker", "exec", "n8n", "n8n", "import:workflow", f"--input={container_path}"]
        if self.import_output is not None:
            returncode, output = self.import_output
            return subprocess.CompletedProcess(args, returncode, stdout=output, stderr="")

        name = self.definitions.get(container_path, "AI Chat Workflow")
        if self.store.latest_workflow_id(name) is not None:
            return subprocess.CompletedProcess(
                args, 1, stdout="", stderr=f"Workflow '{name}' already exists in the database"
            )
        self.store.add_workflow(name)
        return subprocess.CompletedProcess(args, 0, stdout="Successfully imported 1 workflow.", stderr="")

    def update_workflow(self, workflow_id, active=True):
        self.calls.append(("update", workflow_id, active))
        args = ["docker", "exec", "n8n", "n8n", "update:workflow", f"--id={workflow_id}"]
        if self.update_returncode != 0:
            return subprocess.CompletedProcess(
                args, self.update_returncode, stdout="", stderr="Error: request/body must have required property 'nodes'"
            )
        for row in self.store.rows:
            if row["id"] == workflow_id:
                row["active"] = active
        return subprocess.CompletedProcess(args, 0, stdout="Activating workflow", stderr="")


class FailingStore(FakeStore):
    """FakeStore whose direct writes fail like a psql error."""

    def set_workflow_active(self, workflow_id):
        raise StoreError("psql exited with code 1", detail="permission denied for table workflow_entity")


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_cli(fake_store):
    return FakeN8nCli(fake_store)


@pytest.fixture
def stack_config(tmp_path):
    """StackConfig pointing at a temp project dir with tiny budgets."""
    return StackConfig(
        project_dir=tmp_path,
        compose_command=["docker", "compose"],
        health_budget=RetryBudget(max_attempts=3, delay=1),
        ollama_budget=RetryBudget(max_attempts=3, delay=1),
        schema_budget=RetryBudget(max_attempts=3, delay=1),
        schema_settle_delay=2,
        startup_delay=0,
        restart_settle_delay=0,
    )
