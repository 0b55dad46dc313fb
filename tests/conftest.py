"""
测试配置文件 - pytest fixtures和共用配置
"""

import pytest
import pytest_asyncio
from decimal import Decimal
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from user_discounts.core.database import Base
from user_discounts.models.discount import Discount, DiscountCreate, DiscountType
from user_discounts.models.database.discount_db import UserDiscountDB
from user_discounts.repositories.discount_repository import DiscountRepository
from user_discounts.services.discount_service import DiscountService
from user_discounts.services.discount_notifier import RecordingDiscountNotifier
from user_discounts.services.stacking_strategies import SequentialStackingStrategy


# 配置pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


def _build_discount(
    discount_id: int = 1,
    discount_type: DiscountType = DiscountType.PERCENTAGE,
    value: str = "10",
    priority: int = 0,
    **kwargs
) -> Discount:
    """构造内存中的折扣对象，不落库"""
    return Discount(
        id=discount_id,
        code=kwargs.pop("code", f"D{discount_id}"),
        name=kwargs.pop("name", f"折扣{discount_id}"),
        discount_type=discount_type,
        discount_value=Decimal(value),
        priority=priority,
        **kwargs
    )


@pytest.fixture
def make_discount():
    return _build_discount


@pytest_asyncio.fixture(scope="function")
async def test_db_engine():
    """测试数据库引擎 - 内存SQLite，所有会话共享同一连接"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,  # 设为True可以看到SQL语句
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_db_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncSession:
    """测试数据库会话"""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
def create_discount(session_factory):
    """在独立事务中创建折扣并返回Pydantic模型"""

    async def _create(
        code: str,
        discount_type: DiscountType = DiscountType.PERCENTAGE,
        value: str = "10",
        **kwargs
    ) -> Discount:
        async with session_factory() as session:
            async with session.begin():
                repo = DiscountRepository(session)
                db_discount = await repo.create(DiscountCreate(
                    code=code,
                    name=kwargs.pop("name", f"折扣 {code}"),
                    discount_type=discount_type,
                    discount_value=Decimal(value),
                    **kwargs
                ))
                return repo.to_model(db_discount)

    return _create


@pytest.fixture
def usage_count(session_factory):
    """读取用户在某折扣上的已使用次数"""

    async def _read(user_id: str, discount_id: int) -> Optional[int]:
        async with session_factory() as session:
            result = await session.execute(
                select(UserDiscountDB.usage_count).where(
                    UserDiscountDB.user_id == user_id,
                    UserDiscountDB.discount_id == discount_id
                )
            )
            return result.scalar_one_or_none()

    return _read


@pytest.fixture
def notifier():
    return RecordingDiscountNotifier()


@pytest.fixture
def discount_service(session_factory, notifier) -> DiscountService:
    """默认配置的折扣服务：顺序叠加、上限100%、四舍五入保留两位"""
    return DiscountService(
        session_factory=session_factory,
        strategy=SequentialStackingStrategy(),
        notifier=notifier,
        enable_audit=True
    )
