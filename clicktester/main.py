"""
clicktester - Serve Mode Application

FastAPI application behind the local control page: lists the configured
tasks and runs all of them or a selection on demand.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List

import logging
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from clicktester import __version__
from clicktester.api.routes import tasks as tasks_router
from clicktester.connectors.clickhouse_client import ClickHouseClient
from clicktester.models.task import Task
from clicktester.models.test_config import AppConfig

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
templates.env.globals.update(
    {
        "app_name": "clicktester",
        "app_version": __version__,
    }
)


@dataclass
class ServerContext:
    """State shared by the request handlers for the lifetime of the app."""

    config: AppConfig
    tasks: List[Task]
    client: ClickHouseClient
    workers: int
    query_timeout: float


def create_app(
    config: AppConfig,
    tasks: List[Task],
    client: ClickHouseClient,
    *,
    workers: int | None = None,
) -> FastAPI:
    """
    Build the serve-mode app around an already connected client.

    The client is owned by the caller and is not closed on shutdown.
    """
    ctx = ServerContext(
        config=config,
        tasks=list(tasks),
        client=client,
        workers=max(1, workers or config.execution.workers),
        query_timeout=float(config.execution.query_timeout_sec),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Serving %d task(s) for %s (workers=%d)",
            len(ctx.tasks),
            config.clickhouse.full_table,
            ctx.workers,
        )
        yield
        logger.info("Control page stopped")

    app = FastAPI(
        title="clicktester",
        description="ClickHouse table structure and query smoke tester",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.ctx = ctx

    app.add_api_route(
        "/", index, methods=["GET"], response_class=HTMLResponse, include_in_schema=False
    )
    app.add_api_route("/health", health_check, methods=["GET"])
    app.include_router(tasks_router.router, prefix="/api", tags=["tasks"])
    return app


async def index(request: Request):
    """
    Control page - lists tasks with per-task and run-all buttons.
    """
    ctx: ServerContext = request.app.state.ctx
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "tasks": ctx.tasks,
            "host": ctx.config.clickhouse.host,
            "table": ctx.config.clickhouse.full_table,
            "workers": ctx.workers,
        },
    )


async def health_check(request: Request) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        dict: Service status and a ClickHouse ping check
    """
    ctx: ServerContext = request.app.state.ctx
    health_status: dict[str, Any] = {
        "status": "healthy",
        "service": "clicktester",
        "version": __version__,
        "checks": {},
    }
    try:
        await ctx.client.ping()
        health_status["checks"]["clickhouse"] = {"status": "healthy"}
    except Exception as e:
        health_status["checks"]["clickhouse"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"
    return health_status
