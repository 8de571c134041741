#!/usr/bin/env python3
"""
AI Stack Deployment
Bring the stack up, import and activate the chat workflow, hand off to model setup

Steps run strictly in order and the first failure aborts the run:

    preflight -> start containers -> backend / n8n / ollama health
    -> n8n schema -> stage workflow -> import workflow -> resolve workflow id
    -> activate workflow -> restart n8n -> n8n health -> re-assert activation
    -> model setup

Containers already started are left running when a step fails.
"""

import argparse
import logging
import subprocess
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from rich.console import Console

from n8n_store import PostgresStore, resolve_workflow_id, wait_for_schema_element
from n8n_workflow import (
    ImportOutcome,
    N8nCli,
    activate,
    import_with_confirmation,
    reactivate_after_restart,
    stage_definition,
)
from preflight import print_report, run_preflight
from services import run_compose_command
from stack_config import CONFIG_ERRORS, StackConfig, load_stack_config
from stack_errors import DeployError, ModelSetupFailed
from status import build_service_handles, wait_for_healthy

console = Console()
logger = logging.getLogger(__name__)


@dataclass
class DeployReport:
    completed_steps: List[str] = field(default_factory=list)
    import_outcomes: List[ImportOutcome] = field(default_factory=list)
    workflow_name: Optional[str] = None
    workflow_id: Optional[str] = None
    activation_path: Optional[str] = None
    reactivated: Optional[bool] = None


@contextmanager
def deploy_step(report: DeployReport, name: str):
    """Announce a step, tag any DeployError with its name, record completion."""
    console.print(f"\n[bold blue]=== {name} ===[/bold blue]")
    try:
        yield
    except DeployError as e:
        if e.step is None:
            e.step = name
        raise
    report.completed_steps.append(name)


def run_model_setup(config: StackConfig):
    """Hand off to the model setup script; it may prompt, so output is not captured."""
    try:
        result = subprocess.run(config.model_setup_command, cwd=config.project_dir)
    except (FileNotFoundError, PermissionError) as e:
        raise ModelSetupFailed(
            f"could not run model setup: {' '.join(config.model_setup_command)}", detail=str(e)
        )
    if result.returncode != 0:
        raise ModelSetupFailed(f"model setup exited with code {result.returncode}")


def deploy(config: StackConfig, cli=None, store=None, skip_preflight: bool = False,
           start: bool = True, setup_models: bool = True) -> DeployReport:
    """
    Run the full deployment sequence.

    Args:
        config: Stack configuration shared by every step
        cli: n8n command surface (defaults to N8nCli over docker exec)
        store: n8n database access (defaults to PostgresStore over docker exec)
        skip_preflight: Skip the Docker/Compose checks
        start: Run `docker compose up -d` first
        setup_models: Run the model setup hand-off at the end

    Returns:
        DeployReport describing what was done

    Raises:
        DeployError: subclass for the first failing step, with `.step` set
    """
    cli = cli or N8nCli(config)
    store = store or PostgresStore(config)
    report = DeployReport()
    handles = build_service_handles(config)

    if not skip_preflight:
        with deploy_step(report, "preflight"):
            preflight = run_preflight(config.project_dir, check_ports=start)
            if preflight.compose_command:
                config.compose_command = preflight.compose_command
            print_report(preflight)

    if start:
        with deploy_step(report, "start containers"):
            run_compose_command(config, "up", "-d", timeout=None)
            console.print(f"[green]✅ Containers started[/green], giving them {config.startup_delay:g}s to boot")
            time.sleep(config.startup_delay)

    for service_name in ("backend", "n8n", "ollama"):
        budget = config.ollama_budget if service_name == "ollama" else config.health_budget
        with deploy_step(report, f"{service_name} health"):
            wait_for_healthy(handles[service_name], budget)
            console.print(f"[green]✅ {service_name} is ready[/green]")

    with deploy_step(report, "n8n schema"):
        wait_for_schema_element(
            store, config.workflow_table, config.schema_budget, config.schema_settle_delay
        )
        console.print(f"[green]✅ n8n table {config.workflow_table} is ready[/green]")

    with deploy_step(report, "stage workflow"):
        definition = stage_definition(config)
        report.workflow_name = config.workflow_name or definition.name
        console.print(f"[green]✅ Staged '{definition.name}' ({len(definition.nodes)} nodes)[/green]")

    with deploy_step(report, "import workflow"):
        report.import_outcomes = import_with_confirmation(
            cli, config.workflow_container_path, strict=config.strict_import
        )
        if report.import_outcomes[0] is ImportOutcome.ALREADY_EXISTS:
            console.print("[yellow]📦 Workflow already exists, keeping it[/yellow]")
        else:
            console.print("[green]✅ Workflow imported[/green]")

    with deploy_step(report, "resolve workflow id"):
        report.workflow_id = resolve_workflow_id(store, report.workflow_name)
        console.print(f"[green]✅ Workflow id: {report.workflow_id}[/green]")

    with deploy_step(report, "activate workflow"):
        report.activation_path = activate(
            cli, store, report.workflow_id, allow_fallback=config.activation_fallback
        )
        if report.activation_path == "store":
            console.print("[yellow]⚠️  n8n CLI rejected activation, activated in the database instead[/yellow]")
        console.print("[green]✅ Workflow activated[/green]")

    # n8n only picks up activation changes on start
    with deploy_step(report, "restart n8n"):
        run_compose_command(config, "restart", config.n8n_service)
        time.sleep(config.restart_settle_delay)

    with deploy_step(report, "n8n health (after restart)"):
        handles["n8n"].state = "unknown"
        wait_for_healthy(handles["n8n"], config.health_budget)
        console.print("[green]✅ n8n is back up[/green]")

    with deploy_step(report, "re-assert activation"):
        report.reactivated = reactivate_after_restart(
            cli, store, report.workflow_id, allow_fallback=config.activation_fallback
        )
        if report.reactivated:
            console.print("[green]✅ Workflow is active after restart[/green]")
        else:
            console.print("[yellow]⚠️  Could not confirm activation after restart; check the n8n UI[/yellow]")

    if setup_models:
        with deploy_step(report, "model setup"):
            run_model_setup(config)

    return report


def print_summary(report: DeployReport):
    console.print("\n[green]🎉 Setup Complete![/green]")
    console.print(f"   Workflow:     {report.workflow_name} (id {report.workflow_id})")
    console.print("\nYour AI stack is now running at:")
    console.print("• Frontend:     [yellow]http://localhost:3000[/yellow]")
    console.print("• n8n:          [yellow]http://localhost:5678[/yellow]")
    console.print("• Backend API:  [yellow]http://localhost:3001[/yellow]")
    console.print("• Ollama API:   [yellow]http://localhost:11434[/yellow]")
    console.print("\nTo stop all services: [yellow]python services.py stop --all[/yellow]")
    console.print("To view logs: [yellow]python services.py logs[/yellow]")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="AI Stack Deployment")
    parser.add_argument('--project-dir', default=None, help='Directory containing docker-compose.yml')
    parser.add_argument('--skip-preflight', action='store_true', help='Skip Docker/Compose checks')
    parser.add_argument('--no-start', action='store_true',
                        help='Assume containers are already up; skip docker compose up')
    parser.add_argument('--skip-models', action='store_true', help='Skip the model setup hand-off')
    parser.add_argument('--verbose', '-v', action='store_true', help='Log every poll attempt')
    args = parser.parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    console.print("🚀 [bold]AI Stack Deployment[/bold]")
    try:
        config = load_stack_config(Path(args.project_dir) if args.project_dir else None)
    except CONFIG_ERRORS as e:
        console.print(f"[red]❌ Invalid configuration: {e}[/red]")
        return 1

    try:
        report = deploy(
            config,
            skip_preflight=args.skip_preflight,
            start=not args.no_start,
            setup_models=not args.skip_models,
        )
    except DeployError as e:
        console.print(f"\n[red]❌ Step '{e.step or 'setup'}' failed: {e.message}[/red]")
        if e.detail:
            console.print("[red]Diagnostic output:[/red]")
            for line in e.detail.splitlines():
                console.print(f"  [dim]{line}[/dim]")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Deployment interrupted[/yellow]")
        return 130

    print_summary(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
