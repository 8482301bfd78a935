# main.py

import os
import logging
import asyncio
import gc
import psutil
from contextlib import asynccontextmanager

import asyncpg
import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from src.core.config import (
    DATABASE_URL,
    DB_POOL_MIN_SIZE,
    DB_POOL_MAX_SIZE,
    PROCESSED_EVENTS_RETENTION_DAYS,
    RATE_LIMIT_ENABLED,
    get_allowed_origins,
)
from src.core.db import init_db, close_db, transaction, healthcheck, purge_processed_events
from src.core.errors import MarketplaceError, InvalidRequest, StorageFailure
from src.core.middleware import SecurityHeadersMiddleware, RequestLoggingMiddleware
from src.routers import (
    users_router,
    offers_router,
    claims_router,
    billing_router,
    feed_router,
)
from src.services.stripe_service import clear_account_status_cache

# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
)
logger = logging.getLogger("offer-marketplace-backend")

CLEANUP_INTERVAL = 60 * 60  # seconds


async def background_cleanup():
    """定期的に実行するクリーンアップタスク"""
    while True:
        try:
            await asyncio.sleep(CLEANUP_INTERVAL)
            logger.info("定期クリーンアップを開始します...")

            # 1. 古い Stripe イベント記録の削除
            async with transaction() as conn:
                deleted = await purge_processed_events(conn, PROCESSED_EVENTS_RETENTION_DAYS)
            if deleted > 0:
                logger.info(f"処理済み Stripe イベントを {deleted} 件削除しました。")

            # 2. アカウント状態キャッシュのクリア
            clear_account_status_cache()

            gc.collect()
            logger.info("定期クリーンアップが完了しました。")
        except asyncio.CancelledError:
            logger.info("定期クリーンアップタスクを停止します。")
            break
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"定期クリーンアップ中にエラーが発生しました: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db(DATABASE_URL, min_size=DB_POOL_MIN_SIZE, max_size=DB_POOL_MAX_SIZE)

    cleanup_task = asyncio.create_task(background_cleanup())

    app.state.http_client = httpx.AsyncClient(timeout=20)
    try:
        yield
    finally:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await app.state.http_client.aclose()
        await close_db()


app = FastAPI(lifespan=lifespan)

app.state.limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = "Invalid request"
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()))
        detail = f"Invalid request: {location} {errors[0].get('msg', '')}".strip()
    error = InvalidRequest(detail)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(asyncpg.PostgresError)
async def storage_error_handler(request: Request, exc: asyncpg.PostgresError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    error = StorageFailure("Database error")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    error = MarketplaceError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


app.include_router(users_router)
app.include_router(offers_router)
app.include_router(claims_router)
app.include_router(billing_router)
app.include_router(feed_router)


@app.get("/health")
async def health():
    """DB疎通とメモリ使用状況を確認するエンドポイント"""
    process = psutil.Process(os.getpid())
    mem_info = process.memory_info()

    try:
        db_status = await healthcheck()
    except (asyncpg.PostgresError, OSError, RuntimeError) as e:
        logger.error(f"Health check failed: {e}")
        db_status = {"ok": False}

    return {
        "ok": db_status["ok"],
        "db": db_status,
        "rss": f"{mem_info.rss / 1024 / 1024:.2f} MB",
    }
