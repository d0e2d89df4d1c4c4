from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from agentflow.config import DATABASE_URL

Base = declarative_base()

# ─────────────────────────────── 引擎和会话 ────────────────────────────────

def build_engine(url: str = DATABASE_URL, echo: bool = False) -> AsyncEngine:
    if ":memory:" in url:
        # 内存库必须共享同一个连接，否则每个会话都是一张空库
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, pool_pre_ping=True)
    return create_async_engine(
        url,
        echo=echo,
        pool_size=20,
        max_overflow=40,
        pool_timeout=30,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )


async def create_schema(engine: AsyncEngine) -> None:
    # models 必须先导入，表才会注册到 Base.metadata
    from agentflow.persistence import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async_engine = build_engine()
AsyncSessionLocal = build_session_factory(async_engine)

# ─────────────────────────────── 会话工厂 ────────────────────────────────

async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    session = AsyncSessionLocal()
    try:
        yield session
    finally:
        await session.close()
