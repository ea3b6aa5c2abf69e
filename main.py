"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError

from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from core.settings import payment_settings
from infrastructure.database import create_tables
from infrastructure.external.cache import (
    get_redis_client,
    init_redis_client,
    shutdown_redis_client,
)
from infrastructure.external.payments import build_gateway_registry
from infrastructure.locks import InProcessLockProvider, RedisLockProvider


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时创建数据库表（仅开发环境）。生产应使用 Alembic 迁移
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )

    # 锁：配置了 Redis 时跨进程互斥，否则退化为进程内锁
    lock_provider = None
    if settings.redis.url:
        try:
            redis_client = await init_redis_client()
            lock_provider = RedisLockProvider(redis_client)
            logger.info("payment_lock_provider_selected", backend="redis")
        except RedisError as exc:
            logger.error("redis_init_failed", error=str(exc))
    if lock_provider is None:
        lock_provider = InProcessLockProvider(blocking_timeout=settings.PAYMENT_LOCK_BLOCKING_TIMEOUT)
        logger.info("payment_lock_provider_selected", backend="in_process")
    app.state.lock_provider = lock_provider

    registry = build_gateway_registry(payment_settings)
    app.state.gateway_registry = registry
    logger.info("payment_gateways_loaded", count=len(registry), gateways=[d.id for d in registry.descriptors()])

    yield

    await registry.aclose()
    if settings.redis.url:
        await shutdown_redis_client()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="订单支付生命周期服务：发起、处理、退款与交易流水",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. 日志中间件（依赖request_id，所以先注册、后执行）
app.add_middleware(LoggingMiddleware)

# 2. Request ID中间件（在日志中间件之前执行）
app.add_middleware(RequestIDMiddleware)

# 3. CORS中间件（最外层）
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)

# 注册路由
app.include_router(payments_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
        }
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点；配置了 Redis 时附带锁后端的连通性"""
    data = {"status": "healthy"}
    if settings.redis.url:
        try:
            redis_client = await get_redis_client()
            data["redis"] = "ok" if await redis_client.health_check() else "unavailable"
        except RedisError:
            data["redis"] = "unavailable"
    return success_response(data=data, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
