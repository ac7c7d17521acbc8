"""
Worker process: `python -m task_pipeline.worker`.
Runs the worker pool and the scheduler without the HTTP surface.
"""
import asyncio
import logging
import signal

from task_pipeline.settings import settings
from task_pipeline.db.session import engine, init_models
from task_pipeline.logging_config import setup_logging
from task_pipeline.pipeline import build_pipeline

logger = logging.getLogger(__name__)

async def main():
    setup_logging(settings.LOG_LEVEL)
    await init_models(engine)

    pipeline = build_pipeline(settings)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows support
            pass

    await pipeline.start()
    logger.info(f"Worker process started ({settings.WORKER_CONCURRENCY} slots)")
    try:
        await shutdown.wait()
        logger.info("Shutdown signal received")
    finally:
        await pipeline.stop()
        await engine.dispose()
        logger.info("Worker process stopped")

if __name__ == "__main__":
    asyncio.run(main())
