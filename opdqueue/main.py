import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from opdqueue.api.api import api_router
from opdqueue.api.deps import lanes
from opdqueue.core.config import settings
from opdqueue.core.errors import QueueError
from opdqueue.core.logger import logger
from opdqueue.core.redis import redis_client
from opdqueue.db.session import async_session
from opdqueue.middleware.log_middleware import LogMiddleware
from opdqueue.services.queue_service import QueueService
from opdqueue.services.sweep_service import run_sweeper


@asynccontextmanager
async def sweep_service():
    async with async_session() as session:
        yield QueueService(session, lanes, notifier=redis_client, broadcaster=redis_client, cache=redis_client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = None
    if settings.SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(run_sweeper(settings.SWEEP_INTERVAL_SECONDS, sweep_service))
    yield
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            logger.info("Background sweeper stopped")
    await redis_client.close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(LogMiddleware)


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError):
    logger.warning(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


@app.get("/")
async def root():
    return {"message": "Welcome to OPD Queue Engine API"}

app.include_router(api_router, prefix=settings.API_V1_STR)
