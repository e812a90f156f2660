import logging

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from companion.core.config import settings
from companion.db.session import get_db
from companion.utils.redis_pool import get_redis

log = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    checks = {"db": "ok"}
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        log.warning("Health check: database unavailable: %s", e)
        checks["db"] = "unavailable"

    if settings.REALTIME_BACKEND == "redis":
        try:
            redis = await get_redis()
            await redis.ping()
            checks["redis"] = "ok"
        except RedisError as e:
            log.warning("Health check: redis unavailable: %s", e)
            checks["redis"] = "unavailable"

    ok = all(v == "ok" for v in checks.values())
    return {"ok": ok, "checks": checks}
