"""
Audit logging for deployment and canary actions.

Every state change (deployment phase, rollback, canary transition) and every
manual request is appended to a JSONL trail. Audit failures never break the
operation being audited.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_LOG_PATH = Path("/var/log/pull-agent/audit.jsonl")

_audit_log_path = DEFAULT_AUDIT_LOG_PATH


def configure_audit_log(path: Optional[str]) -> None:
    """Point the audit trail at ``path`` (or back at the default)."""
    global _audit_log_path
    _audit_log_path = Path(path) if path else DEFAULT_AUDIT_LOG_PATH


def get_audit_log_path() -> Path:
    return _audit_log_path


def _write_entry(entry: Dict[str, Any]) -> None:
    _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(_audit_log_path, "a") as f:
        f.write(json.dumps(entry, default=str) + "\n")


def audit_deployment_action(
    action: Optional[str] = None,
    deployment_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    user: Optional[str] = None,
    success: Optional[bool] = None,
) -> None:
    """
    Log a deployment action for audit purposes.

    Args:
        action: Action taken (started, phase_completed, phase_failed, rollback, ...)
        deployment_id: Deployment identifier
        details: Additional details about the action
        user: Who triggered the action (trigger source for automatic ones)
        success: Outcome, when the action has one
    """
    try:
        audit_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": "deployment",
            "action": action,
            "deployment_id": deployment_id,
            "user": user or "system",
            "details": details or {},
        }
        if success is not None:
            audit_entry["success"] = success

        _write_entry(audit_entry)

        logger.debug(f"Audit: {action} deployment {deployment_id} by {user or 'system'}")

    except Exception as e:
        logger.error(f"Failed to write audit log: {e}")


def audit_canary_action(
    action: str,
    rollout_id: str,
    details: Optional[Dict[str, Any]] = None,
    user: Optional[str] = None,
    success: Optional[bool] = None,
) -> None:
    """
    Log a canary rollout action for audit purposes.

    Args:
        action: Action taken (start, progress, pause, resume, promote, rollback)
        rollout_id: Rollout identifier
        details: Additional details
        user: Who performed the action ("controller" for autonomous decisions)
        success: Outcome, when the action has one
    """
    try:
        audit_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": "canary",
            "action": action,
            "rollout_id": rollout_id,
            "user": user or "system",
            "details": details or {},
        }
        if success is not None:
            audit_entry["success"] = success

        _write_entry(audit_entry)

    except Exception as e:
        logger.warning(f"Failed to write canary audit entry: {e}")
