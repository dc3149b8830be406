"""
API routes for the pull agent, organized by domain:
- system: health, status, history, logs, containers
- deployment: manual deploy and rollback, update checks, commits
- webhook: GitHub webhook receiver
- github: GitHub Actions runs and workflow dispatch
- canary: progressive rollouts
- events: WebSocket event stream
"""

from fastapi import APIRouter

from . import canary, deployment, events, github, system, webhook

__all__ = ["create_routes"]


def create_routes() -> APIRouter:
    """Assemble all route modules into one router."""
    router = APIRouter()
    router.include_router(system.router)
    router.include_router(deployment.router)
    router.include_router(webhook.router)
    router.include_router(github.router)
    router.include_router(canary.router)
    router.include_router(events.router)
    return router
