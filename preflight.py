#!/usr/bin/env python3
"""
AI Stack Requirements Checker
Verify Docker, Docker Compose, free ports and disk space before deploying
"""

import argparse
import platform
import shutil
import socket
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from rich.console import Console

from services import SERVICES
from setup_utils import detect_compose_command
from stack_errors import PreflightFailed

console = Console()

MIN_FREE_DISK_GB = 10

INSTALL_HINTS = {
    "Linux": "https://docs.docker.com/engine/install/ubuntu/",
    "Darwin": "https://docs.docker.com/desktop/install/mac-install/",
    "Windows": "https://docs.docker.com/desktop/install/windows-install/",
}


@dataclass
class PreflightReport:
    compose_command: Optional[List[str]] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def check_docker() -> Optional[str]:
    """Return an error message, or None if Docker is installed and running"""
    if not shutil.which("docker"):
        hint = INSTALL_HINTS.get(platform.system(), "https://docs.docker.com/get-docker/")
        return f"Docker is not installed. Install it from {hint}"

    try:
        result = subprocess.run(["docker", "info"], capture_output=True, text=True, timeout=30)
    except subprocess.TimeoutExpired:
        return "Docker did not answer 'docker info' within 30 seconds"

    if result.returncode != 0:
        return "Docker is installed but not running. Please start Docker first."
    return None


def port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(1)
        return sock.connect_ex((host, port)) == 0


def required_ports() -> List[int]:
    return sorted(int(port) for info in SERVICES.values() for port in info["ports"])


def free_disk_gb(path: Path) -> float:
    return shutil.disk_usage(path).free / (1024 ** 3)


def run_preflight(project_dir: Path, check_ports: bool = True) -> PreflightReport:
    """
    Check host requirements.

    Missing Docker or Compose are errors; busy ports and low disk space are
    warnings, since a re-run against an already running stack holds the ports.

    Raises:
        PreflightFailed: when any error was found
    """
    report = PreflightReport()

    docker_error = check_docker()
    if docker_error:
        report.errors.append(docker_error)
    else:
        report.compose_command = detect_compose_command()
        if report.compose_command is None:
            report.errors.append("Docker Compose is not installed (neither 'docker compose' nor 'docker-compose')")

    if check_ports:
        for port in required_ports():
            if port_in_use(port):
                report.warnings.append(f"Port {port} is in use (fine if the stack is already running)")

    available = free_disk_gb(project_dir)
    if available < MIN_FREE_DISK_GB:
        report.warnings.append(
            f"Only {available:.1f}GB disk space available ({MIN_FREE_DISK_GB}GB+ recommended for AI models)"
        )

    if not report.ok:
        raise PreflightFailed("; ".join(report.errors), detail="\n".join(report.warnings) or None)
    return report


def print_report(report: PreflightReport):
    if report.compose_command:
        console.print(f"[green]✅ Docker is running, compose: {' '.join(report.compose_command)}[/green]")
    for warning in report.warnings:
        console.print(f"[yellow]⚠️  {warning}[/yellow]")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="AI Stack Requirements Checker")
    parser.add_argument('--project-dir', default='.', help='Directory the stack will run from')
    parser.add_argument('--skip-ports', action='store_true', help='Do not check for busy ports')
    args = parser.parse_args(argv)

    console.print("🔍 [bold]AI Stack Requirements Checker[/bold]\n")
    try:
        report = run_preflight(Path(args.project_dir), check_ports=not args.skip_ports)
    except PreflightFailed as e:
        console.print(f"[red]❌ {e.message}[/red]")
        if e.detail:
            for warning in e.detail.splitlines():
                console.print(f"[yellow]⚠️  {warning}[/yellow]")
        return 1

    print_report(report)
    console.print("\n[green]✅ All critical requirements met![/green]")
    console.print("Run: [yellow]python deploy.py[/yellow]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
