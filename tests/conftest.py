"""
Pytest配置文件
"""
import os

# 必须在导入 tongai 之前设置，避免全局引擎连接 PostgreSQL
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("ADMIN_PASSWORD", "114514")
os.environ.setdefault("AI_API_KEY", "sk-test")

import pytest
import pytest_asyncio
from hypothesis import settings, HealthCheck
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tongai.core.database import Base
import tongai.models  # noqa: F401
from tongai.models import AccessKey, ImageAccessKey

# 配置Hypothesis
settings.register_profile(
    "default",
    max_examples=100,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)
settings.load_profile("default")


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """每个测试一个独立的 SQLite 文件数据库"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'tongai_test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def active_key(db):
    """一个有效、限额 1000 的主密钥"""
    key = AccessKey(code="vip-1", note="test", is_active=True, total_tokens=0, token_limit=1000)
    db.add(key)
    await db.commit()
    return key


@pytest_asyncio.fixture
async def image_key(db):
    key = ImageAccessKey(code="img-1", is_active=True, total_images=0, image_limit=3)
    db.add(key)
    await db.commit()
    return key


@pytest.fixture
def reload_key(session_factory):
    """用新会话重新读取密钥，避免读到身份映射中的旧值"""
    async def _reload(model, code):
        async with session_factory() as session:
            result = await session.execute(select(model).where(model.code == code))
            return result.scalar_one_or_none()
    return _reload
