"""
FastAPI application factory.
"""

import logging
import time
from typing import Any

from fastapi import FastAPI, Request

from pull_agent import __version__
from pull_agent.logging_config import API_LOGGER
from pull_agent.utils.log_sanitizer import sanitize_for_log

from .routes import create_routes

access_logger = logging.getLogger(API_LOGGER)


def create_app(agent: Any) -> FastAPI:
    """
    Create the API application bound to ``agent``.

    Routes reach the agent through ``app.state.agent``.
    """
    app = FastAPI(title="Pull Agent API", version=__version__)
    app.state.agent = agent

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Any) -> Any:
        start_time = time.time()
        response = await call_next(request)
        duration_ms = int((time.time() - start_time) * 1000)
        client = request.client.host if request.client else "-"
        access_logger.info(
            f"{client} {request.method} {sanitize_for_log(request.url.path, 200)} "
            f"{response.status_code} {duration_ms}ms",
            extra={"duration_ms": duration_ms},
        )
        return response

    app.include_router(create_routes())
    return app
