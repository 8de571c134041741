#!/usr/bin/env python3
"""
AI Stack Service Management
Start, stop, restart and inspect the docker compose services
"""

import argparse
import json
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from n8n_store import PostgresStore
from n8n_workflow import backup_workflows, restore_workflows
from stack_config import CONFIG_ERRORS, StackConfig, load_stack_config
from stack_errors import ComposeError, StoreError

console = Console()

SERVICES = {
    'frontend': {
        'container': 'ai_frontend',
        'description': 'React Chat UI (nginx)',
        'ports': ['3000']
    },
    'backend': {
        'container': 'ai_backend',
        'description': 'Express API Backend',
        'ports': ['3001']
    },
    'n8n': {
        'container': 'n8n',
        'description': 'n8n Workflow Engine',
        'ports': ['5678']
    },
    'ollama': {
        'container': 'ollama',
        'description': 'Ollama Model Server',
        'ports': ['11434']
    },
    'postgres': {
        'container': 'postgres',
        'description': 'PostgreSQL (n8n)',
        'ports': [],
        'pg_user': 'n8n',
        'pg_db': 'n8n',
        'backup_file': 'n8n_backup.sql'
    },
    'postgres_backend': {
        'container': 'postgres_backend',
        'description': 'PostgreSQL (backend)',
        'ports': [],
        'pg_user': 'backend_user',
        'pg_db': 'ai_app',
        'backup_file': 'app_backup.sql'
    }
}

COMPOSE_TIMEOUT = 120

STACK_VERSION = "1.0.0"


def database_targets(config: StackConfig) -> Dict[str, Dict[str, str]]:
    """Container, user and database of every Postgres service.

    The n8n database follows the config (.env / config/stack.yml); the
    backend database uses the registry values.
    """
    targets = {}
    for service_name, service_info in SERVICES.items():
        if 'pg_user' not in service_info:
            continue
        if service_name == 'postgres':
            target = {
                'container': config.postgres_container,
                'user': config.postgres_user,
                'db': config.postgres_db,
            }
        else:
            target = {
                'container': service_info['container'],
                'user': service_info['pg_user'],
                'db': service_info['pg_db'],
            }
        target['backup_file'] = service_info['backup_file']
        targets[service_name] = target
    return targets


def run_compose_command(config: StackConfig, *args: str, timeout: Optional[int] = COMPOSE_TIMEOUT,
                        capture: bool = True) -> subprocess.CompletedProcess:
    """
    Run a docker compose command in the project directory.

    Raises:
        ComposeError: on a non-zero exit, a timeout, or a missing compose binary
    """
    cmd = list(config.compose_command) + list(args)
    label = ' '.join(cmd)

    try:
        result = subprocess.run(
            cmd,
            cwd=config.project_dir,
            capture_output=capture,
            text=True,
            check=False,
            timeout=timeout
        )
    except subprocess.TimeoutExpired:
        raise ComposeError(f"'{label}' timed out after {timeout} seconds")
    except FileNotFoundError as e:
        raise ComposeError(f"'{label}' could not be run", detail=str(e))

    if result.returncode != 0:
        raise ComposeError(
            f"'{label}' exited with code {result.returncode}",
            detail=(result.stderr or result.stdout or '').strip() or None
        )
    return result


def _print_compose_error(error: ComposeError):
    console.print(f"[red]❌ {error.message}[/red]")
    if error.detail:
        console.print("[red]Error output:[/red]")
        for line in error.detail.splitlines():
            console.print(f"  [dim]{line}[/dim]")


def list_running_services(config: StackConfig) -> List[str]:
    """Return compose service names currently in the running state."""
    result = run_compose_command(
        config, 'ps', '--services', '--filter', 'status=running', timeout=10
    )
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def get_container_states(config: StackConfig) -> Dict[str, Dict[str, str]]:
    """Map compose service name to its container state from `docker compose ps --format json`."""
    result = run_compose_command(config, 'ps', '--all', '--format', 'json', timeout=10)

    # Compose v2 prints one JSON object per line; older releases print a JSON array
    output = result.stdout.strip()
    if output.startswith('['):
        try:
            entries = json.loads(output)
        except json.JSONDecodeError:
            entries = []
    else:
        entries = []
        for line in output.splitlines():
            if line.strip():
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

    states = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        service_name = entry.get('Service') or entry.get('Name', 'unknown')
        states[service_name] = {
            'name': entry.get('Name', 'unknown'),
            'state': entry.get('State', 'unknown'),
            'status': entry.get('Status', 'unknown'),
            'health': entry.get('Health') or 'none'
        }
    return states


def wait_for_running(config: StackConfig, services: List[str], timeout: float = 60,
                     interval: float = 3) -> bool:
    """Wait until every service reports running, giving each up to `timeout` seconds."""
    for service_name in services:
        console.print(f"Checking status of service: {service_name}")
        start_time = time.monotonic()

        while True:
            try:
                if service_name in list_running_services(config):
                    console.print(f"[green]✅ {service_name} is running[/green]")
                    break
            except ComposeError as e:
                console.print(f"[yellow]⚠️  {e.message}[/yellow]")

            if time.monotonic() - start_time > timeout:
                console.print(
                    f"[red]❌ Timeout reached ({timeout:g} seconds) while waiting for {service_name}[/red]"
                )
                return False

            time.sleep(interval)

    return True


def start_services(config: StackConfig, services: List[str], build: bool = False) -> bool:
    """Start specified services (all services when the list is empty)"""
    label = ', '.join(services) if services else 'all services'
    console.print(f"🚀 [bold]Starting {label}...[/bold]")

    args = ['up', '-d']
    if build:
        args.append('--build')

    try:
        # Builds can take minutes, so no timeout when --build is given
        run_compose_command(config, *args, *services, timeout=None if build else COMPOSE_TIMEOUT)
    except ComposeError as e:
        _print_compose_error(e)
        return False

    console.print(f"[green]✅ Started {label}[/green]")
    console.print("")
    console.print("[bold cyan]Access URLs:[/bold cyan]")
    console.print("   Frontend:     http://localhost:3000")
    console.print("   n8n:          http://localhost:5678")
    console.print("   Backend API:  http://localhost:3001")
    console.print("   Ollama API:   http://localhost:11434")
    return True


def stop_services(config: StackConfig, services: List[str]) -> bool:
    """Stop specified services; with no names the whole stack is brought down"""
    if services:
        console.print(f"🛑 [bold]Stopping {', '.join(services)}...[/bold]")
        args = ['stop', *services]
    else:
        console.print("🛑 [bold]Stopping all services...[/bold]")
        args = ['down']

    try:
        run_compose_command(config, *args)
    except ComposeError as e:
        _print_compose_error(e)
        return False

    console.print("[green]✅ Services stopped[/green]")
    return True


def restart_services(config: StackConfig, services: List[str], wait: bool = False) -> bool:
    """Restart specified services and optionally wait until they are running again"""
    label = ', '.join(services) if services else 'all services'
    console.print(f"🔄 [bold]Restarting {label}...[/bold]")

    try:
        run_compose_command(config, 'restart', *services)
    except ComposeError as e:
        _print_compose_error(e)
        return False

    if not wait:
        console.print(f"[green]✅ Restarted {label}[/green]")
        return True

    if not services:
        try:
            services = run_compose_command(config, 'ps', '--services', timeout=10).stdout.split()
        except ComposeError as e:
            _print_compose_error(e)
            return False

    if wait_for_running(config, services):
        console.print("[green]🎉 All services are running[/green]")
        return True

    console.print("[red]Some services failed to restart properly. Check logs: python services.py logs[/red]")
    return False


def show_logs(config: StackConfig, service: Optional[str] = None, tail: int = 50, follow: bool = True):
    """Stream service logs to the terminal"""
    args = ['logs', f'--tail={tail}']
    if follow:
        args.append('-f')
    if service:
        args.append(service)

    try:
        run_compose_command(config, *args, timeout=None, capture=False)
    except ComposeError as e:
        _print_compose_error(e)
    except KeyboardInterrupt:
        pass


def show_status(config: StackConfig):
    """Show container state of all services"""
    console.print("📊 [bold]Service Status:[/bold]\n")

    try:
        states = get_container_states(config)
    except ComposeError as e:
        _print_compose_error(e)
        states = {}

    table = Table()
    table.add_column("Service", style="cyan")
    table.add_column("Container")
    table.add_column("State", justify="center")
    table.add_column("Description", style="dim")
    table.add_column("Ports", style="green")

    for service_name, service_info in SERVICES.items():
        state = states.get(service_name, {}).get('state', 'not created')
        state_text = f"[green]{state}[/green]" if state == 'running' else f"[red]{state}[/red]"
        table.add_row(
            service_name,
            service_info['container'],
            state_text,
            service_info['description'],
            ", ".join(service_info['ports']) or "-"
        )

    console.print(table)

    console.print("\n💡 [dim]Use 'python status.py' for HTTP health checks[/dim]")


def backup_data(config: StackConfig, now: Optional[datetime] = None) -> Tuple[Path, List[str]]:
    """
    Dump both databases and copy the n8n workflows into backups/<timestamp>/.

    Each part is attempted even when an earlier one fails.

    Returns:
        (backup directory, names of the parts that failed)
    """
    now = now or datetime.now()
    backup_dir = config.project_dir / 'backups' / now.strftime('%Y%m%d_%H%M%S')
    backup_dir.mkdir(parents=True, exist_ok=True)
    console.print(f"💾 [bold]Creating backup in {backup_dir}[/bold]")

    failed = []
    for service_name, target in database_targets(config).items():
        store = PostgresStore(config, container=target['container'], user=target['user'], db=target['db'])
        try:
            (backup_dir / target['backup_file']).write_text(store.dump())
        except StoreError as e:
            console.print(f"[yellow]⚠️  {service_name} backup failed: {e.message}[/yellow]")
            failed.append(service_name)
            continue
        console.print(f"[green]✅ {service_name} database saved to {target['backup_file']}[/green]")

    try:
        backup_workflows(config, backup_dir / 'workflows')
    except ComposeError as e:
        console.print(f"[yellow]⚠️  Workflows backup failed: {e.message}[/yellow]")
        failed.append('workflows')
    else:
        console.print("[green]✅ n8n workflows saved[/green]")

    (backup_dir / 'backup_info.txt').write_text(
        f"Backup created: {now.isoformat(timespec='seconds')}\nStack version: {STACK_VERSION}\n"
    )
    return backup_dir, failed


def restore_data(config: StackConfig, backup_dir: Path, assume_yes: bool = False) -> bool:
    """Replay database dumps and workflows from a backup directory, then restart the stack"""
    if not backup_dir.is_dir():
        console.print(f"[red]❌ Backup directory not found: {backup_dir}[/red]")
        return False

    console.print("[yellow]⚠️  This will overwrite current data![/yellow]")
    if not assume_yes and not Confirm.ask("Continue with restore?", default=False):
        console.print("Restore cancelled")
        return False

    try:
        for service_name, target in database_targets(config).items():
            dump_path = backup_dir / target['backup_file']
            if not dump_path.exists():
                continue
            store = PostgresStore(config, container=target['container'], user=target['user'], db=target['db'])
            store.restore(dump_path.read_text())
            console.print(f"[green]✅ {service_name} database restored[/green]")

        if (backup_dir / 'workflows').is_dir():
            restore_workflows(config, backup_dir / 'workflows')
            console.print("[green]✅ Workflows restored[/green]")
    except StoreError as e:
        console.print(f"[red]❌ {e.message}[/red]")
        if e.detail:
            console.print(f"  [dim]{e.detail}[/dim]")
        return False
    except ComposeError as e:
        _print_compose_error(e)
        return False

    return restart_services(config, [])


def update_services(config: StackConfig) -> bool:
    """Pull new images, rebuild local ones and recreate the containers"""
    steps = [
        ("Pulling latest images", ['pull']),
        ("Rebuilding custom images", ['build', '--pull']),
        ("Recreating containers", ['up', '-d']),
    ]
    for label, args in steps:
        console.print(f"🔄 [bold]{label}...[/bold]")
        try:
            run_compose_command(config, *args, timeout=None, capture=False)
        except ComposeError as e:
            _print_compose_error(e)
            return False

    console.print("[green]✅ Update completed[/green]")
    return True


def _resolve_services(args) -> Optional[List[str]]:
    if getattr(args, 'all', False) or not args.services:
        return []

    invalid_services = [s for s in args.services if s not in SERVICES]
    if invalid_services:
        console.print(f"[red]❌ Invalid service names: {', '.join(invalid_services)}[/red]")
        console.print(f"Available services: {', '.join(SERVICES.keys())}")
        return None
    return args.services


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="AI Stack Service Management")
    parser.add_argument('--project-dir', default=None, help='Directory containing docker-compose.yml')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    service_help = f"Services: {', '.join(SERVICES.keys())} (default: all)"

    start_parser = subparsers.add_parser('start', help='Start services')
    start_parser.add_argument('services', nargs='*', help=service_help)
    start_parser.add_argument('--all', action='store_true', help='Start all services')
    start_parser.add_argument('--build', action='store_true', help='Build images before starting')

    stop_parser = subparsers.add_parser('stop', help='Stop services')
    stop_parser.add_argument('services', nargs='*', help=service_help)
    stop_parser.add_argument('--all', action='store_true', help='Stop all services')

    restart_parser = subparsers.add_parser('restart', help='Restart services')
    restart_parser.add_argument('services', nargs='*', help=service_help)
    restart_parser.add_argument('--all', action='store_true', help='Restart all services')
    restart_parser.add_argument('--wait', action='store_true',
                                help='Wait until restarted services are running again')

    logs_parser = subparsers.add_parser('logs', help='Show service logs')
    logs_parser.add_argument('service', nargs='?', help='Single service to show (default: all)')
    logs_parser.add_argument('--tail', type=int, default=50, help='Lines of history to show')
    logs_parser.add_argument('--no-follow', action='store_true', help='Print and exit')

    subparsers.add_parser('status', help='Show service status')

    subparsers.add_parser('backup', help='Dump databases and n8n workflows to backups/<timestamp>/')

    restore_parser = subparsers.add_parser('restore', help='Restore databases and workflows from a backup')
    restore_parser.add_argument('backup_dir', help='Backup directory, e.g. backups/20241201_120000')
    restore_parser.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')

    subparsers.add_parser('update', help='Pull and rebuild images, then recreate containers')

    args = parser.parse_args(argv)
    try:
        config = load_stack_config(args.project_dir)
    except CONFIG_ERRORS as e:
        console.print(f"[red]❌ Invalid configuration: {e}[/red]")
        return 1

    if not args.command or args.command == 'status':
        show_status(config)
        return 0

    if args.command == 'logs':
        show_logs(config, args.service, tail=args.tail, follow=not args.no_follow)
        return 0

    if args.command == 'backup':
        backup_dir, failed = backup_data(config)
        if failed:
            console.print(f"[yellow]⚠️  Backup in {backup_dir} is incomplete: {', '.join(failed)} failed[/yellow]")
            return 1
        console.print(f"[green]✅ Backup completed in: {backup_dir}[/green]")
        return 0

    if args.command == 'restore':
        backup_dir = Path(args.backup_dir)
        if not backup_dir.is_absolute():
            backup_dir = config.project_dir / backup_dir
        return 0 if restore_data(config, backup_dir, assume_yes=args.yes) else 1

    if args.command == 'update':
        return 0 if update_services(config) else 1

    services = _resolve_services(args)
    if services is None:
        return 1

    if args.command == 'start':
        ok = start_services(config, services, build=args.build)
    elif args.command == 'stop':
        ok = stop_services(config, services)
    else:
        ok = restart_services(config, services, wait=args.wait)

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
