"""FastAPI application factory.

Assembles all API routers.  This module is the authoritative app object --
ghgpipe/main.py re-exports it.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from ghgpipe.api.routes.health import router as health_router
from ghgpipe.api.routes.interactions import router as interactions_router
from ghgpipe.api.routes.jobs import router as jobs_router
from ghgpipe.api.routes.reports import router as reports_router
from ghgpipe.core.logging import setup_logging
from ghgpipe.core.settings import get_settings


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    yield


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(reports_router)
app.include_router(interactions_router)
app.include_router(jobs_router)
