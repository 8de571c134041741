"""
AI Stack Configuration

A single StackConfig is built once per run and passed to every deployment
step. Values are layered: built-in defaults, then the project's .env
(POSTGRES_USER / POSTGRES_DB), then config/stack.yml.

Example config/stack.yml:

    workflow:
      name: AI Chat Workflow
    budgets:
      health: {max_attempts: 30, delay: 5}
      schema_settle_delay: 10
    activation_fallback: false
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from setup_utils import detect_compose_command, load_yaml_file, merge_configs, read_env_value

# Everything load_stack_config raises for a bad .env or config/stack.yml
CONFIG_ERRORS = (ValueError, KeyError, yaml.YAMLError)


@dataclass(frozen=True)
class RetryBudget:
    """Fixed-interval polling budget: at most max_attempts probes, delay seconds apart."""

    max_attempts: int
    delay: float

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must not be negative")

    @classmethod
    def from_dict(cls, data: dict) -> "RetryBudget":
        if not isinstance(data, dict):
            raise ValueError(f"retry budget must be a mapping with max_attempts and delay, got {data!r}")
        try:
            return cls(max_attempts=int(data["max_attempts"]), delay=float(data["delay"]))
        except TypeError as e:
            raise ValueError(f"invalid retry budget {data!r}: {e}")


DEFAULT_HEALTH_ENDPOINTS = {
    "frontend": "http://localhost:3000",
    "backend": "http://localhost:3001/health",
    "n8n": "http://localhost:5678/healthz",
    "ollama": "http://localhost:11434/api/tags",
}

DEFAULTS = {
    "containers": {
        "n8n": "n8n",
        "postgres": "postgres",
        "ollama": "ollama",
    },
    "n8n_service": "n8n",
    "postgres": {
        "user": "n8n",
        "db": "n8n",
        "workflow_table": "workflow_entity",
    },
    "workflow": {
        "file": "n8n/workflows/chat-workflow.json",
        "container_path": "/home/node/.n8n/workflows/chat-workflow.json",
        "name": None,
    },
    "health_endpoints": DEFAULT_HEALTH_ENDPOINTS,
    "budgets": {
        "health": {"max_attempts": 20, "delay": 5},
        "ollama": {"max_attempts": 60, "delay": 5},
        "schema": {"max_attempts": 30, "delay": 2},
        "schema_settle_delay": 5,
        "startup_delay": 10,
        "restart_settle_delay": 5,
    },
    "strict_import": True,
    "activation_fallback": True,
    "model_setup_command": ["./scripts/setup-ollama.sh"],
}


@dataclass
class StackConfig:
    project_dir: Path = field(default_factory=Path.cwd)
    compose_command: List[str] = field(default_factory=lambda: ["docker", "compose"])

    n8n_container: str = "n8n"
    postgres_container: str = "postgres"
    ollama_container: str = "ollama"
    n8n_service: str = "n8n"

    postgres_user: str = "n8n"
    postgres_db: str = "n8n"
    workflow_table: str = "workflow_entity"

    workflow_file: Path = Path("n8n/workflows/chat-workflow.json")
    workflow_container_path: str = "/home/node/.n8n/workflows/chat-workflow.json"
    # None means "use the name field of the definition document"
    workflow_name: Optional[str] = None

    health_endpoints: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEALTH_ENDPOINTS))

    health_budget: RetryBudget = RetryBudget(max_attempts=20, delay=5)
    ollama_budget: RetryBudget = RetryBudget(max_attempts=60, delay=5)
    schema_budget: RetryBudget = RetryBudget(max_attempts=30, delay=2)
    schema_settle_delay: float = 5
    startup_delay: float = 10
    restart_settle_delay: float = 5

    strict_import: bool = True
    activation_fallback: bool = True
    model_setup_command: List[str] = field(default_factory=lambda: ["./scripts/setup-ollama.sh"])

    @property
    def env_path(self) -> Path:
        return self.project_dir / ".env"

    @property
    def workflow_container_dir(self) -> str:
        return self.workflow_container_path.rsplit("/", 1)[0] or "/"

    @property
    def workflow_host_path(self) -> Path:
        if self.workflow_file.is_absolute():
            return self.workflow_file
        return self.project_dir / self.workflow_file


SECTIONS = ("containers", "postgres", "workflow", "health_endpoints", "budgets")


def _as_command(value: Union[str, List[str]], key: str) -> List[str]:
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list) and value:
        return [str(part) for part in value]
    raise ValueError(f"{key} must be a command string or a list, got {value!r}")


def _as_seconds(value, key: str) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"budgets.{key} must be a number of seconds, got {value!r}")
    if seconds < 0:
        raise ValueError(f"budgets.{key} must not be negative")
    return seconds


def _as_text(value, key: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} must be a non-empty string, got {value!r}")
    return value


def load_stack_config(project_dir: Optional[Path] = None, overrides: Optional[dict] = None) -> StackConfig:
    """
    Build the StackConfig for a project directory.

    Args:
        project_dir: Directory holding docker-compose.yml and .env (defaults to cwd)
        overrides: Extra settings applied last, in the config/stack.yml shape

    Returns:
        Fully populated StackConfig

    Raises:
        ValueError: a setting has the wrong shape or type
        yaml.YAMLError: config/stack.yml cannot be parsed
    """
    project_dir = Path(project_dir or Path.cwd()).resolve()

    settings = merge_configs(DEFAULTS, {})

    env_path = str(project_dir / ".env")
    env_postgres = {}
    for env_key, setting in (("POSTGRES_USER", "user"), ("POSTGRES_DB", "db")):
        value = read_env_value(env_path, env_key)
        if value:
            env_postgres[setting] = value
    if env_postgres:
        settings = merge_configs(settings, {"postgres": env_postgres})

    settings = merge_configs(settings, load_yaml_file(project_dir / "config" / "stack.yml"))
    if overrides:
        settings = merge_configs(settings, overrides)

    for section in SECTIONS:
        if not isinstance(settings.get(section), dict):
            raise ValueError(f"{section} must be a mapping, got {settings.get(section)!r}")

    containers = settings["containers"]
    postgres = settings["postgres"]
    workflow = settings["workflow"]
    budgets = settings["budgets"]

    compose_command = settings.get("compose_command")
    if compose_command:
        compose_command = _as_command(compose_command, "compose_command")
    else:
        compose_command = detect_compose_command() or ["docker", "compose"]

    workflow_name = workflow.get("name")
    if workflow_name is not None and not isinstance(workflow_name, str):
        raise ValueError(f"workflow.name must be a string, got {workflow_name!r}")

    return StackConfig(
        project_dir=project_dir,
        compose_command=compose_command,
        n8n_container=_as_text(containers["n8n"], "containers.n8n"),
        postgres_container=_as_text(containers["postgres"], "containers.postgres"),
        ollama_container=_as_text(containers["ollama"], "containers.ollama"),
        n8n_service=_as_text(settings["n8n_service"], "n8n_service"),
        postgres_user=str(postgres["user"]),
        postgres_db=str(postgres["db"]),
        workflow_table=_as_text(postgres["workflow_table"], "postgres.workflow_table"),
        workflow_file=Path(_as_text(workflow["file"], "workflow.file")),
        workflow_container_path=_as_text(workflow["container_path"], "workflow.container_path"),
        workflow_name=workflow_name,
        health_endpoints={str(name): str(url) for name, url in settings["health_endpoints"].items()},
        health_budget=RetryBudget.from_dict(budgets["health"]),
        ollama_budget=RetryBudget.from_dict(budgets["ollama"]),
        schema_budget=RetryBudget.from_dict(budgets["schema"]),
        schema_settle_delay=_as_seconds(budgets["schema_settle_delay"], "schema_settle_delay"),
        startup_delay=_as_seconds(budgets["startup_delay"], "startup_delay"),
        restart_settle_delay=_as_seconds(budgets["restart_settle_delay"], "restart_settle_delay"),
        strict_import=bool(settings["strict_import"]),
        activation_fallback=bool(settings["activation_fallback"]),
        model_setup_command=_as_command(settings["model_setup_command"], "model_setup_command"),
    )
