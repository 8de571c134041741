"""
Error classes for AI stack deployment.

Every deployment step raises a subclass of DeployError when it cannot
continue. The orchestrator never recovers from these locally: the CLI catches
them once, prints the failing step and the raw diagnostic, and exits with 1.
"""

from typing import Optional


class DeployError(Exception):
    """Base exception for a fatal deployment step."""

    def __init__(self, message: str, detail: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.step = step


class PreflightFailed(DeployError):
    """Docker or Docker Compose is missing or not running."""


class ComposeError(DeployError):
    """A docker compose command exited non-zero, timed out or could not run."""


class ServiceUnavailable(DeployError):
    """Health probe budget exhausted without a successful response."""


class StoreError(DeployError):
    """A psql invocation against the n8n database failed."""


class SchemaTimeout(DeployError):
    """n8n never created the table we wait for within the polling budget."""


class ImportFailed(DeployError):
    """n8n import:workflow produced output we do not recognise as success."""


class IdentifierNotFound(DeployError):
    """No workflow_entity row matches the imported workflow name."""


class ActivationFailed(DeployError):
    """Neither the n8n CLI nor the direct store update activated the workflow."""


class ModelSetupFailed(DeployError):
    """The Ollama model setup hand-off exited non-zero."""
