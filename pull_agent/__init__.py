"""Pull Agent - GitOps-lite deployment and canary orchestration service."""

__version__ = "1.0.0"
