import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from database import SessionLocal, init_db
from logging_utils import configure_logging
from chat_service import TurnService
from completion_service import CompletionClient, CompletionConfig
from errors import (
    AccessError,
    InvalidRequestError,
    PersistenceError,
    RateLimitError,
    TurnError,
    UpstreamError,
)
from message_store import MessageStore
from routes import chat_router, sessions_router
from session_mirror import SessionMirror
from turn_config import TurnSettings

configure_logging()
logger = logging.getLogger(__name__)

MIRROR_DRAIN_TIMEOUT_SEC = 5.0


def build_turn_service(redis: Redis, settings: TurnSettings) -> TurnService:
    mirror = SessionMirror(SessionLocal, MessageStore(settings.persist_max_chars))
    return TurnService(
        CompletionClient(CompletionConfig.from_env()),
        redis=redis,
        settings=settings,
        mirror=mirror,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    settings = TurnSettings.from_env()
    redis = Redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"), decode_responses=True)
    service = build_turn_service(redis, settings)
    app.state.turn_service = service
    await service.mirror.start()
    logger.info("chat backend started")
    try:
        yield
    finally:
        await service.mirror.stop(drain_timeout=MIRROR_DRAIN_TIMEOUT_SEC)
        await redis.aclose()
        logger.info("chat backend stopped")


app = FastAPI(
    title="Chat Turn API",
    description="Character chat turn orchestration",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip()
        for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:8000").split(",")
        if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(chat_router)


def _error_response(exc: TurnError) -> JSONResponse:
    headers = {}
    if exc.retryable and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "fail" if exc.status_code < 500 else "error", "message": exc.message},
        headers=headers or None,
    )


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(request: Request, exc: InvalidRequestError):
    return _error_response(exc)


@app.exception_handler(AccessError)
async def access_error_handler(request: Request, exc: AccessError):
    logger.info("access error path=%s status=%d message=%s", request.url.path, exc.status_code, exc.message)
    return _error_response(exc)


@app.exception_handler(RateLimitError)
async def rate_limit_handler(request: Request, exc: RateLimitError):
    logger.warning("rate limited path=%s retry_after=%s", request.url.path, exc.retry_after)
    return _error_response(exc)


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    logger.error("upstream failure path=%s type=%s message=%s", request.url.path, type(exc).__name__, exc.message)
    return _error_response(exc)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error("persistence failure path=%s type=%s failures=%s", request.url.path, type(exc).__name__, exc.failures)
    return _error_response(exc)


@app.middleware("http")
async def utf8_charset_middleware(request: Request, call_next):
    response = await call_next(request)
    ct = response.headers.get("content-type", "")
    if "application/json" in ct and "charset" not in ct:
        response.headers["content-type"] = ct + "; charset=utf-8"
    return response


@app.get("/")
async def root():
    return {
        "message": "Chat Turn API",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
