"""
Exception hierarchy for the pull agent.

Infrastructure errors (commands, timeouts) are raised at the lowest layer and
caught at the phase boundary, where they become deployment or rollout status
transitions. Only API routes translate these into HTTP errors.
"""

from typing import Any, Dict, Optional


class PullAgentError(Exception):
    """Base exception for all pull agent errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigurationError(PullAgentError):
    """Invalid or unreadable configuration."""


class CommandError(PullAgentError):
    """An external command could not be completed."""

    def __init__(
        self,
        message: str,
        command: str = "",
        stderr: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.command = command
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    """An external command exceeded its timeout and was killed."""

    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command timed out after {timeout:g}s: {command}", command=command)
        self.timeout = timeout


class CommandFailedError(CommandError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: str, returncode: int, stderr: str = ""):
        message = f"Command failed ({returncode}): {command}"
        if stderr:
            message += f"\nStderr: {stderr.strip()}"
        super().__init__(message, command=command, stderr=stderr)
        self.returncode = returncode


class DeploymentInProgressError(PullAgentError):
    """Raised when a trigger loses the race for the deployment gate."""

    def __init__(self, deployment_id: Optional[str] = None):
        message = "Deployment already in progress"
        if deployment_id:
            message = f"Deployment {deployment_id} already in progress"
        super().__init__(message)
        self.deployment_id = deployment_id


class PhaseFailedError(PullAgentError):
    """A deployment phase did not complete successfully."""

    def __init__(self, phase: str, message: str):
        super().__init__(message)
        self.phase = phase


class WebhookAuthenticationError(PullAgentError):
    """Webhook signature missing or invalid."""


class CanaryError(PullAgentError):
    """Base class for canary controller errors."""


class CanaryNotFoundError(CanaryError):
    """No rollout with the requested id."""

    def __init__(self, rollout_id: str):
        super().__init__(f"Canary deployment not found: {rollout_id}")
        self.rollout_id = rollout_id


class CanaryAlreadyExistsError(CanaryError):
    """A non-terminal rollout with the same id is already registered."""

    def __init__(self, rollout_id: str):
        super().__init__(f"Canary deployment {rollout_id} is already active")
        self.rollout_id = rollout_id


class InvalidCanaryTransitionError(CanaryError):
    """The requested action is not valid from the rollout's current status."""

    def __init__(self, rollout_id: str, status: str, action: str):
        super().__init__(f"Cannot {action} canary {rollout_id} while {status}")
        self.rollout_id = rollout_id
        self.status = status
        self.action = action


class GitHubAPIError(PullAgentError):
    """GitHub API request failed or GitHub integration is not configured."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, {"status_code": status_code} if status_code else None)
        self.status_code = status_code
