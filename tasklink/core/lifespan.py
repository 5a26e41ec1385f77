import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tasklink.core.config import settings
from tasklink.core.dispatcher import get_dispatcher
from tasklink.core.logging import setup_logging
from tasklink.core.maintenance import maintenance_task
from tasklink.core.valkey import close_valkey
from tasklink.db.session import engine
from tasklink.dependencies.services import get_health_monitor


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Lifespan function for the FastAPI application.
    Handles startup and shutdown events for application services.
    """
    setup_logging(settings.LOG_LEVEL)

    # 1. Start the per-connection sync workers
    dispatcher = get_dispatcher()
    await dispatcher.start()

    # 2. Start the stale connection check
    maintenance = asyncio.create_task(maintenance_task(get_health_monitor()))

    yield

    # 3. Stop maintenance
    maintenance.cancel()
    try:
        await maintenance
    except asyncio.CancelledError:
        pass

    # 4. Stop workers
    await dispatcher.stop()

    # 5. Close Valkey/Redis Connection
    await close_valkey()

    # 6. Dispose Database Engine
    await engine.dispose()
