"""
数据库配置和连接管理
"""
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.engine import make_url

from core.config import settings
from infrastructure.models import Base


def _build_async_url(database_url: str) -> str:
    """确保数据库URL使用异步驱动"""
    url = make_url(database_url)
    drivername = url.drivername

    if "+" in drivername:
        return database_url

    driver_map = {
        "postgresql": "postgresql+asyncpg",
        "postgres": "postgresql+asyncpg",
        "sqlite": "sqlite+aiosqlite",
    }

    if drivername not in driver_map:
        raise ValueError(f"不支持的数据库驱动: {drivername}. 请使用 async 驱动或更新 DATABASE__URL")

    return url.set(drivername=driver_map[drivername]).render_as_string(hide_password=False)


def build_engine(database_url: str) -> AsyncEngine:
    """创建异步引擎；SQLite 不使用连接池参数"""
    url = _build_async_url(database_url)
    options = {"echo": settings.database.echo}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **options)


engine = build_engine(settings.database.url)

# expire_on_commit=False：提交后仍可读取实体映射所需的字段
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def create_tables(bind: AsyncEngine = None):
    """
    创建所有表（开发环境与测试使用，生产走 Alembic 迁移）
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
