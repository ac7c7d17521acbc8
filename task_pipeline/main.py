import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy import text

from task_pipeline.settings import settings
from task_pipeline.api.deps import DbSession
from task_pipeline.api.v1.tasks import router as tasks_router
from task_pipeline.api.v1.admin import router as admin_router
from task_pipeline.api.v1.metrics import router as metrics_router
from task_pipeline.db.session import engine, init_models
from task_pipeline.logging_config import setup_logging
from task_pipeline.pipeline import Pipeline, build_pipeline

logger = logging.getLogger(__name__)

def create_app(pipeline: Optional[Pipeline] = None, start_background: Optional[bool] = None) -> FastAPI:
    """
    Builds the HTTP app. With no `pipeline` the lifespan creates the tables and
    wires one from settings; tests pass their own.
    """
    if start_background is None:
        start_background = settings.START_BACKGROUND_WORKERS

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = pipeline
        if active is None:
            setup_logging(settings.LOG_LEVEL)
            await init_models(engine)
            active = build_pipeline(settings)
        app.state.pipeline = active

        if start_background:
            await active.start()
            logger.info("Background worker pool and scheduler started")

        yield

        await active.stop()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    if pipeline is not None:
        # Available without running the lifespan (ASGITransport does not run it)
        app.state.pipeline = pipeline

    app.include_router(tasks_router, prefix="/api/v1/tasks", tags=["tasks"])
    app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health(session: DbSession):
        await session.execute(text("SELECT 1"))
        return {"status": "ok"}

    return app

app = create_app()
