from typing import Any
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from outbox_service.core.database import get_db
from outbox_service.core.broker import broker
from outbox_service.repositories.outbox import OutboxStore
from outbox_service.schemas.outbox import OutboxHealth

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    health: dict[str, Any] = {"status": "healthy", "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health["checks"]["database"] = "healthy"
        counts = await OutboxStore(db).count_by_status()
        health["outbox"] = OutboxHealth(**{status.value: count for status, count in counts.items()}).model_dump()
    except Exception as e:
        health["checks"]["database"] = f"unhealthy: {str(e)}"
        health["status"] = "unhealthy"

    if broker.is_connected:
        health["checks"]["rabbitmq"] = "healthy"
    else:
        health["checks"]["rabbitmq"] = "unhealthy: not connected"
        health["status"] = "unhealthy"

    return health
