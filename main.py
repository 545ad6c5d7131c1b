"""
FastAPI application entry point
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from contextlib import asynccontextmanager

from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from core.settings import payment_settings
from infrastructure.composition import build_payment_service
from infrastructure.database import create_tables, engine
from infrastructure.external.cache import (
    current_redis_client,
    init_redis_client,
    shutdown_redis_client,
)
from infrastructure.tasks.utils.dispatcher import CeleryPaymentTaskDispatcher


# configure logging explicitly at the entry point
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan"""
    # create tables on startup (development only)
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")

    redis = None
    if settings.redis.url:
        try:
            redis = await init_redis_client()
            logger.info("redis_initialized")
        except Exception as exc:
            logger.error("redis_init_failed", error=str(exc))
            # cannot start without the distributed lock backend
            if payment_settings.locking.backend == "redis":
                raise

    # payment services: one per process, lock backend from settings
    app.state.payment_service = build_payment_service(
        scheduler=CeleryPaymentTaskDispatcher(),
        redis=redis,
    )
    logger.info(
        "payment_service_initialized",
        provider=payment_settings.gateway.provider,
        lock_backend=payment_settings.locking.backend,
    )

    yield

    await app.state.payment_service.aclose()
    if settings.redis.url:
        await shutdown_redis_client()
        logger.info("redis_shutdown")
    await engine.dispose()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Ride-sharing payment & commission settlement engine",
)

# middleware order: the last one added runs first
# 1. access log (reads the request_id bound by the outer layer)
app.add_middleware(LoggingMiddleware)

# 2. request id (wraps the access log, binds the structlog context)
app.add_middleware(RequestIDMiddleware)

# 3. CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# exception handlers
register_exception_handlers(app)


# routes
app.include_router(payments_routes.router, prefix="/api/v1")


# root
@app.get("/", tags=["Root"])
async def root():
    """API root"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
    )


# health check
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check: the database is required, redis only when it is the lock backend"""
    checks = {"database": await _database_ok()}
    redis = current_redis_client()
    if redis is not None:
        checks["redis"] = await redis.health_check()
    elif payment_settings.locking.backend == "redis":
        checks["redis"] = False

    healthy = all(checks.values())
    body = success_response(data={"status": "healthy" if healthy else "degraded", "checks": checks})
    return JSONResponse(
        status_code=200 if healthy else 503,
        content=body.model_dump(mode="json"),
    )


async def _database_ok() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("database_health_check_failed", error=str(exc))
        return False
    return True


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
