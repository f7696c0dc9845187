from contextlib import asynccontextmanager
from fastapi import FastAPI

from outbox_service.core.logging import setup_logging
from outbox_service.core.broker import broker
from outbox_service.core.config import settings
from outbox_service.core.database import engine, async_session_maker
from outbox_service.models import Base
from outbox_service.api.health import router as health_router
from outbox_service.services.dispatcher import OutboxDispatcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await broker.connect()
    dispatcher = OutboxDispatcher.from_settings(async_session_maker, broker, settings)
    await dispatcher.start()
    app.state.dispatcher = dispatcher

    yield

    await dispatcher.stop()
    await broker.close()
    await engine.dispose()


app = FastAPI(
    title="Outbox Service",
    description="Transactional outbox dispatcher",
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(health_router)
