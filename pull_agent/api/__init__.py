"""
HTTP API for the pull agent.
"""

from pull_agent.api.app import create_app

__all__ = ["create_app"]
