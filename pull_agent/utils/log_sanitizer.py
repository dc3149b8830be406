"""
Log sanitization utilities to prevent log injection attacks.

Webhook payloads, request bodies and git output all end up in log lines;
anything that came from outside the process goes through these helpers first.
"""

import re
from typing import Any

_REVISION_PATTERN = re.compile(r"[^0-9a-fA-F]")


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """
    Sanitize a value for safe logging.

    Removes control characters, newlines, and other potentially dangerous characters
    that could be used for log injection attacks.

    Args:
        value: The value to sanitize
        max_length: Maximum length of the output (default 100)

    Returns:
        Sanitized string safe for logging
    """
    str_value = str(value)

    # Keep only printable ASCII and common unicode
    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f\r\n\t]", "", str_value)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


def sanitize_revision(revision: Any) -> str:
    """
    Sanitize a git revision (commit SHA) for logging.

    Args:
        revision: Revision as received from git or a webhook payload

    Returns:
        Hex-only revision, at most 40 characters
    """
    if revision is None:
        return ""
    return _REVISION_PATTERN.sub("", str(revision))[:40]


def sanitize_identifier(identifier: Any) -> str:
    """
    Sanitize an identifier such as a rollout id or branch name.

    Identifiers may only contain alphanumerics, dots, slashes, hyphens and
    underscores.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9_./-]", "", str(identifier))
    return sanitized[:64]
