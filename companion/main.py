import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from companion.api.admin import router as admin_router
from companion.api.changes_ws import router as changes_ws_router
from companion.api.health import router as health_router
from companion.api.matching import router as matching_router
from companion.api.stages import router as stages_router
from companion.core.config import settings
from companion.exceptions import (
    DependencyFailureError,
    InvalidRequestError,
    InvalidStateError,
    LimitExceededError,
    MatchingError,
    NotAuthorizedError,
    NotEligibleError,
    NotFoundError,
)
from companion.realtime.notifier import RedisChangeNotifier, get_notifier
from companion.scheduler import start_scheduler, stop_scheduler
from companion.utils.redis_pool import close_redis

log = logging.getLogger("companion")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

STATUS_BY_ERROR = (
    (LimitExceededError, 409),
    (InvalidStateError, 409),
    (NotEligibleError, 422),
    (InvalidRequestError, 422),
    (NotFoundError, 404),
    (NotAuthorizedError, 403),
    (DependencyFailureError, 503),
)


def status_for(exc: MatchingError) -> int:
    for cls, code in STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    relay_task = None
    notifier = get_notifier()
    if isinstance(notifier, RedisChangeNotifier):
        relay_task = asyncio.create_task(notifier.relay())
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()
        if relay_task is not None:
            relay_task.cancel()
        await close_redis()


app = FastAPI(title="companion", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MatchingError)
async def matching_error_handler(request: Request, exc: MatchingError):
    status_code = status_for(exc)
    if status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": exc.message, "code": exc.code, "details": exc.details or None},
    )


app.include_router(health_router)
app.include_router(matching_router)
app.include_router(admin_router)
app.include_router(stages_router)
app.include_router(changes_ws_router)
