"""Tests for n8n_workflow.py: import classification, idempotent import, activation."""

import json
import subprocess
from unittest.mock import patch

import pytest

import n8n_workflow
from conftest import FailingStore, FakeN8nCli, FakeStore
from n8n_workflow import (
    ImportOutcome,
    N8nCli,
    activate,
    backup_workflows,
    classify_import_output,
    import_definition,
    import_with_confirmation,
    load_definition,
    reactivate_after_restart,
    restore_workflows,
    stage_definition,
)
from stack_errors import ActivationFailed, ComposeError, ImportFailed, StoreError

WORKFLOW_PATH = "/home/node/.n8n/workflows/chat-workflow.json"

CHAT_WORKFLOW = {
    "name": "AI Chat Workflow",
    "nodes": [
        {"name": "Webhook", "type": "n8n-nodes-base.webhook"},
        {"name": "Ollama API", "type": "n8n-nodes-base.httpRequest"},
        {"name": "Response", "type": "n8n-nodes-base.respondToWebhook"},
    ],
    "connections": {"Webhook": {"main": [[{"node": "Ollama API", "type": "main", "index": 0}]]}},
    "active": True,
}


# ---------------------------------------------------------------------------
# classify_import_output
# ---------------------------------------------------------------------------

def test_classify_success_phrase():
    assert classify_import_output(0, "Successfully imported 1 workflow.") is ImportOutcome.IMPORTED


def test_classify_already_exists_phrase():
    assert classify_import_output(1, "Workflow already exists in the database") is ImportOutcome.ALREADY_EXISTS


def test_classify_already_exists_wins_even_with_zero_exit():
    assert classify_import_output(0, "already exists in the database") is ImportOutcome.ALREADY_EXISTS


def test_classify_permission_denied_is_fatal():
    assert classify_import_output(1, "permission denied") is ImportOutcome.FATAL


def test_classify_success_phrase_with_failed_exit_is_fatal():
    assert classify_import_output(1, "Successfully imported 0 workflows. An error occurred") is ImportOutcome.FATAL


def test_classify_empty_output_is_fatal():
    assert classify_import_output(0, "") is ImportOutcome.FATAL


# ---------------------------------------------------------------------------
# import_definition / import_with_confirmation
# ---------------------------------------------------------------------------

def test_import_failure_surfaces_raw_output():
    cli = FakeN8nCli(FakeStore(), import_output=(1, "EACCES: permission denied, open '/home/node/.n8n/workflows'"))

    with pytest.raises(ImportFailed) as excinfo:
        import_definition(cli, WORKFLOW_PATH)

    assert "permission denied" in excinfo.value.detail


def test_reimport_is_already_exists_and_adds_no_record(fake_store, fake_cli):
    assert import_definition(fake_cli, WORKFLOW_PATH) is ImportOutcome.IMPORTED
    assert import_definition(fake_cli, WORKFLOW_PATH) is ImportOutcome.ALREADY_EXISTS

    assert [row["name"] for row in fake_store.rows] == ["AI Chat Workflow"]


def test_strict_import_runs_twice(fake_store, fake_cli):
    outcomes = import_with_confirmation(fake_cli, WORKFLOW_PATH, strict=True)

    assert outcomes == [ImportOutcome.IMPORTED, ImportOutcome.ALREADY_EXISTS]
    assert [c[0] for c in fake_cli.calls] == ["import", "import"]
    assert len(fake_store.rows) == 1


def test_non_strict_import_runs_once(fake_cli):
    outcomes = import_with_confirmation(fake_cli, WORKFLOW_PATH, strict=False)
    assert outcomes == [ImportOutcome.IMPORTED]
    assert len(fake_cli.calls) == 1


def test_strict_import_on_existing_stack(fake_store, fake_cli):
    fake_store.add_workflow("AI Chat Workflow", active=True)
    outcomes = import_with_confirmation(fake_cli, WORKFLOW_PATH, strict=True)
    assert outcomes == [ImportOutcome.ALREADY_EXISTS, ImportOutcome.ALREADY_EXISTS]
    assert len(fake_store.rows) == 1


# ---------------------------------------------------------------------------
# activate / reactivate_after_restart
# ---------------------------------------------------------------------------

def test_activate_via_cli(fake_store, fake_cli):
    row = fake_store.add_workflow("AI Chat Workflow")

    assert activate(fake_cli, fake_store, row["id"]) == "cli"
    assert row["active"] is True
    assert fake_store.direct_updates == []


def test_activate_falls_back_to_store_when_cli_rejects():
    store = FakeStore()
    row = store.add_workflow("AI Chat Workflow")
    cli = FakeN8nCli(store, update_returncode=1)

    assert activate(cli, store, row["id"], allow_fallback=True) == "store"
    assert row["active"] is True
    assert store.direct_updates == [row["id"]]


def test_activate_without_fallback_is_fatal():
    store = FakeStore()
    row = store.add_workflow("AI Chat Workflow")
    cli = FakeN8nCli(store, update_returncode=1)

    with pytest.raises(ActivationFailed) as excinfo:
        activate(cli, store, row["id"], allow_fallback=False)

    assert "nodes" in excinfo.value.detail
    assert store.direct_updates == []
    assert row["active"] is False


def test_activate_fallback_matching_no_rows_is_fatal():
    store = FakeStore()
    cli = FakeN8nCli(store, update_returncode=1)

    with pytest.raises(ActivationFailed):
        activate(cli, store, "does-not-exist")


def test_activate_fallback_store_error_is_fatal():
    store = FailingStore()
    row = store.add_workflow("AI Chat Workflow")
    cli = FakeN8nCli(store, update_returncode=1)

    with pytest.raises(ActivationFailed) as excinfo:
        activate(cli, store, row["id"])
    assert "permission denied" in excinfo.value.detail


def test_reactivate_after_restart_reasserts_reverted_flag(fake_store, fake_cli):
    row = fake_store.add_workflow("AI Chat Workflow")
    activate(fake_cli, fake_store, row["id"])
    row["active"] = False  # flag lost across the restart

    assert reactivate_after_restart(fake_cli, fake_store, row["id"]) is True
    assert row["active"] is True
    assert [c[0] for c in fake_cli.calls] == ["update", "update"]


def test_reactivate_after_restart_swallows_failures():
    store = FailingStore()
    row = store.add_workflow("AI Chat Workflow")
    cli = FakeN8nCli(store, update_returncode=1)

    assert reactivate_after_restart(cli, store, row["id"]) is False


def test_reactivate_after_restart_swallows_read_back_error(fake_store, fake_cli):
    row = fake_store.add_workflow("AI Chat Workflow")

    with patch.object(fake_store, "workflow_active", side_effect=StoreError("psql exited with code 2")):
        assert reactivate_after_restart(fake_cli, fake_store, row["id"]) is False


# ---------------------------------------------------------------------------
# N8nCli
# ---------------------------------------------------------------------------

def test_cli_builds_docker_exec_commands(stack_config):
    cli = N8nCli(stack_config)
    done = subprocess.CompletedProcess([], 0, stdout="", stderr="")

    with patch.object(n8n_workflow.subprocess, "run", return_value=done) as run:
        cli.import_workflow(WORKFLOW_PATH)
        cli.update_workflow("12", active=True)

    assert run.call_args_list[0][0][0] == [
        "docker", "exec", "n8n", "n8n", "import:workflow", f"--input={WORKFLOW_PATH}",
    ]
    assert run.call_args_list[1][0][0] == [
        "docker", "exec", "n8n", "n8n", "update:workflow", "--id=12", "--active=true",
    ]


def test_cli_timeout_becomes_failed_result(stack_config):
    with patch.object(n8n_workflow.subprocess, "run", side_effect=subprocess.TimeoutExpired("n8n", 120)):
        result = N8nCli(stack_config).import_workflow(WORKFLOW_PATH)
    assert result.returncode != 0
    assert classify_import_output(result.returncode, result.stderr) is ImportOutcome.FATAL


# ---------------------------------------------------------------------------
# load_definition / stage_definition
# ---------------------------------------------------------------------------

def _write_workflow(stack_config, document=None):
    path = stack_config.workflow_host_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document if document is not None else CHAT_WORKFLOW))
    return path


def test_load_definition_reads_name_and_graph(stack_config):
    path = _write_workflow(stack_config)

    definition = load_definition(path)

    assert definition.name == "AI Chat Workflow"
    assert len(definition.nodes) == 3
    assert "Webhook" in definition.connections
    assert definition.active is True
    assert definition.source == path


def test_load_definition_without_name_fails(stack_config):
    path = _write_workflow(stack_config, {"nodes": []})
    with pytest.raises(ImportFailed):
        load_definition(path)


@pytest.mark.parametrize("content", [
    "{\"name\": \"AI Chat Workflow\", nodes: []}",
    "",
    b"\xff\xfe\x00garbage",
])
def test_load_definition_unreadable_document_fails(stack_config, content):
    path = stack_config.workflow_host_path
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content)

    with pytest.raises(ImportFailed) as excinfo:
        load_definition(path)

    assert str(path) in excinfo.value.message
    assert excinfo.value.detail


def test_stage_definition_rejects_malformed_document_before_copying(stack_config):
    path = stack_config.workflow_host_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json")

    with patch.object(n8n_workflow.subprocess, "run") as run:
        with pytest.raises(ImportFailed):
            stage_definition(stack_config)
    run.assert_not_called()


def test_stage_definition_copies_into_container(stack_config):
    host_path = _write_workflow(stack_config)
    done = subprocess.CompletedProcess([], 0, stdout="", stderr="")

    with patch.object(n8n_workflow.subprocess, "run", return_value=done) as run:
        definition = stage_definition(stack_config)

    assert definition.name == "AI Chat Workflow"
    commands = [c[0][0] for c in run.call_args_list]
    assert commands == [
        ["docker", "exec", "n8n", "mkdir", "-p", "/home/node/.n8n/workflows"],
        ["docker", "cp", str(host_path), f"n8n:{WORKFLOW_PATH}"],
    ]


def test_stage_definition_missing_file(stack_config):
    with pytest.raises(ImportFailed):
        stage_definition(stack_config)


def test_stage_definition_copy_failure(stack_config):
    _write_workflow(stack_config)
    ok = subprocess.CompletedProcess([], 0, stdout="", stderr="")
    failed = subprocess.CompletedProcess([], 1, stdout="", stderr="Error: No such container: n8n")

    with patch.object(n8n_workflow.subprocess, "run", side_effect=[ok, failed]):
        with pytest.raises(ComposeError) as excinfo:
            stage_definition(stack_config)
    assert "No such container" in excinfo.value.detail


# ---------------------------------------------------------------------------
# backup_workflows / restore_workflows
# ---------------------------------------------------------------------------

def test_backup_workflows_copies_directory_out(stack_config, tmp_path):
    done = subprocess.CompletedProcess([], 0, stdout="", stderr="")
    destination = tmp_path / "backups" / "20240101_120000" / "workflows"

    with patch.object(n8n_workflow.subprocess, "run", return_value=done) as run:
        backup_workflows(stack_config, destination)

    assert run.call_args[0][0] == ["docker", "cp", "n8n:/home/node/.n8n/workflows", str(destination)]


def test_restore_workflows_copies_in_and_fixes_ownership(stack_config, tmp_path):
    done = subprocess.CompletedProcess([], 0, stdout="", stderr="")
    source = tmp_path / "workflows"

    with patch.object(n8n_workflow.subprocess, "run", return_value=done) as run:
        restore_workflows(stack_config, source)

    assert [c[0][0] for c in run.call_args_list] == [
        ["docker", "cp", str(source), "n8n:/home/node/.n8n/"],
        ["docker", "exec", "-u", "root", "n8n", "chown", "-R", "node:node", "/home/node/.n8n/workflows"],
    ]


def test_restore_workflows_copy_failure(stack_config, tmp_path):
    failed = subprocess.CompletedProcess([], 1, stdout="", stderr="Error: No such container: n8n")

    with patch.object(n8n_workflow.subprocess, "run", return_value=failed) as run:
        with pytest.raises(ComposeError):
            restore_workflows(stack_config, tmp_path / "workflows")
    assert run.call_count == 1
