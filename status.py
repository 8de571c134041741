#!/usr/bin/env python3
"""
AI Stack Health Status Checker
Probe service health endpoints, once or until they come up
"""

import argparse
import json
import logging
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

import requests
from rich.console import Console
from rich.table import Table

from services import SERVICES, database_targets, get_container_states
from stack_config import CONFIG_ERRORS, RetryBudget, StackConfig, load_stack_config
from stack_errors import ComposeError, ServiceUnavailable

console = Console()
logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


@dataclass
class ServiceHandle:
    """A named, independently restartable service and how to probe it.

    ``probe`` is either an HTTP URL or a command argv run on the host.
    """

    name: str
    probe: Union[str, Sequence[str]]
    state: str = UNKNOWN


def check_http_health(url: str, timeout: int = 5) -> Dict[str, Any]:
    """Check HTTP health endpoint; anything that answers below 500 counts as up"""
    try:
        response = requests.get(url, timeout=timeout)

        if response.status_code < 500:
            try:
                data = response.json()
            except ValueError:
                data = None
            return {"healthy": True, "status_code": response.status_code, "data": data}
        else:
            return {"healthy": False, "status_code": response.status_code, "data": None}

    except requests.exceptions.ConnectionError:
        return {"healthy": False, "error": "Connection refused"}
    except requests.exceptions.Timeout:
        return {"healthy": False, "error": "Timeout"}
    except requests.exceptions.RequestException as e:
        return {"healthy": False, "error": str(e)}


def check_command_health(cmd: Sequence[str], timeout: int = 10) -> Dict[str, Any]:
    """Run a readiness command (e.g. pg_isready); exit code 0 means healthy"""
    try:
        result = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return {"healthy": False, "error": "Timeout"}
    except FileNotFoundError as e:
        return {"healthy": False, "error": str(e)}

    if result.returncode == 0:
        return {"healthy": True, "returncode": 0}
    return {
        "healthy": False,
        "returncode": result.returncode,
        "error": (result.stderr or result.stdout).strip() or f"exit code {result.returncode}",
    }


def probe_service(service: ServiceHandle) -> Dict[str, Any]:
    """Probe a service once and record the observed state on the handle."""
    if isinstance(service.probe, str):
        outcome = check_http_health(service.probe)
    else:
        outcome = check_command_health(service.probe)

    service.state = HEALTHY if outcome["healthy"] else UNHEALTHY
    return outcome


def wait_for_healthy(service: ServiceHandle, budget: RetryBudget) -> ServiceHandle:
    """
    Poll a service until one probe succeeds.

    Sleeps budget.delay between attempts, so a service that comes up on
    attempt N costs exactly N-1 sleeps. At most budget.max_attempts probes.

    Raises:
        ServiceUnavailable: when every attempt failed
    """
    last_error = None
    for attempt in range(1, budget.max_attempts + 1):
        outcome = probe_service(service)
        if outcome["healthy"]:
            logger.info("%s healthy after %d attempt(s)", service.name, attempt)
            return service

        last_error = outcome.get("error") or f"HTTP {outcome.get('status_code')}"
        logger.debug(
            "%s not ready (attempt %d/%d): %s",
            service.name, attempt, budget.max_attempts, last_error,
        )
        if attempt < budget.max_attempts:
            time.sleep(budget.delay)

    raise ServiceUnavailable(
        f"{service.name} did not become healthy after {budget.max_attempts} attempts",
        detail=last_error,
    )


def build_service_handles(config: StackConfig) -> Dict[str, ServiceHandle]:
    """Create a probe handle for every registered service that has a probe."""
    databases = database_targets(config)
    handles = {}
    for service_name in SERVICES:
        if service_name in config.health_endpoints:
            probe = config.health_endpoints[service_name]
        elif service_name in databases:
            target = databases[service_name]
            probe = ["docker", "exec", target["container"], "pg_isready", "-U", target["user"], "-d", target["db"]]
        else:
            continue
        handles[service_name] = ServiceHandle(name=service_name, probe=probe)
    return handles


def get_service_health(config: StackConfig) -> Dict[str, Dict[str, Any]]:
    """Get container state and probe result for every service"""
    try:
        container_states = get_container_states(config)
    except ComposeError as e:
        logger.warning("Could not read container states: %s", e.message)
        container_states = {}

    handles = build_service_handles(config)
    report = {}
    for service_name in SERVICES:
        container = container_states.get(service_name)
        health = probe_service(handles[service_name]) if service_name in handles else None
        report[service_name] = {
            "container_status": container["state"] if container else "not_created",
            "container_health": container["health"] if container else "none",
            "health": health,
        }
    return report


def show_quick_status(config: StackConfig):
    """Show quick status overview"""
    console.print("\n🏥 [bold]AI Stack Health Status[/bold]\n")

    table = Table(title="Service Status Overview")
    table.add_column("Service", style="cyan", no_wrap=True)
    table.add_column("Container", justify="center")
    table.add_column("Health", justify="center")
    table.add_column("Description", style="dim")

    for service_name, status in get_service_health(config).items():
        if status["container_status"] == "running":
            container_icon = "🟢"
        elif status["container_status"] == "not_created":
            container_icon = "⚪"
        else:
            container_icon = "🔴"

        if status["health"] is None:
            health_icon = "⚪"
        elif status["health"].get("healthy"):
            health_icon = "✅"
        else:
            health_icon = f"❌ [dim]{status['health'].get('error', '')}[/dim]"

        table.add_row(
            service_name,
            container_icon,
            health_icon,
            SERVICES[service_name]["description"],
        )

    console.print(table)

    console.print("\n[dim]Legend:[/dim]")
    console.print("[dim]  Containers: 🟢 Running | 🔴 Stopped/Exited | ⚪ Not Created[/dim]")
    console.print("[dim]  Health: ✅ Healthy | ❌ Unhealthy | ⚪ No Probe[/dim]")


def show_json_status(config: StackConfig):
    """Show status in JSON format for programmatic consumption"""
    print(json.dumps(get_service_health(config), indent=2))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="AI Stack Health Status Checker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python status.py                   Show quick status overview
  python status.py --json            Output status in JSON format
  python status.py --wait n8n        Block until n8n answers (or give up)
        """,
    )
    parser.add_argument('--project-dir', default=None, help='Directory containing docker-compose.yml')
    parser.add_argument(
        "--json", "-j", action="store_true", help="Output status in JSON format"
    )
    parser.add_argument(
        "--wait", "-w", metavar="SERVICE", help="Poll SERVICE with the configured health budget"
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=logging.INFO,
    )
    try:
        config = load_stack_config(args.project_dir)
    except CONFIG_ERRORS as e:
        console.print(f"[red]❌ Invalid configuration: {e}[/red]")
        return 1

    if args.wait:
        handles = build_service_handles(config)
        if args.wait not in handles:
            console.print(f"[red]❌ No health probe for service: {args.wait}[/red]")
            return 1
        try:
            wait_for_healthy(handles[args.wait], config.health_budget)
        except ServiceUnavailable as e:
            console.print(f"[red]❌ {e.message}[/red]")
            return 1
        console.print(f"[green]✅ {args.wait} is healthy[/green]")
        return 0

    if args.json:
        show_json_status(config)
    else:
        show_quick_status(config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
