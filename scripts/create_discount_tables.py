"""
折扣系统数据库表创建脚本
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# 添加项目根目录到Python路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy import text
from user_discounts.core.config import settings
from user_discounts.core.database import Base

# 导入数据库模型以确保表被注册
from user_discounts.models.database.discount_db import DiscountDB, UserDiscountDB, DiscountAuditDB  # noqa: F401
from user_discounts.models.discount import DiscountCreate, DiscountType
from user_discounts.repositories.discount_repository import DiscountRepository


async def create_database_if_not_exists():
    """创建数据库（如果不存在）"""
    # 连接到PostgreSQL服务器（不指定数据库）
    server_url = settings.database_url_computed.replace(f"/{settings.db_name}", "/postgres")

    engine = create_async_engine(server_url)

    async with engine.begin() as conn:
        result = await conn.execute(
            text("SELECT 1 FROM pg_database WHERE datname = :db_name"),
            {"db_name": settings.db_name}
        )

        if not result.fetchone():
            await conn.execute(text("COMMIT"))
            await conn.execute(text(f"CREATE DATABASE {settings.db_name}"))
            print(f"数据库 '{settings.db_name}' 创建成功")
        else:
            print(f"数据库 '{settings.db_name}' 已存在")

    await engine.dispose()


async def create_tables():
    """创建所有数据表"""
    engine = create_async_engine(settings.database_url_computed)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        print("所有数据表创建成功")

    await engine.dispose()


async def create_indexes():
    """创建额外的索引"""
    engine = create_async_engine(settings.database_url_computed)

    indexes = [
        # 只索引未撤销的分配，资格查询走这里
        "CREATE INDEX IF NOT EXISTS idx_user_discounts_active ON user_discounts(user_id, discount_id) WHERE revoked_at IS NULL;",
        # 有效折扣按优先级读取
        "CREATE INDEX IF NOT EXISTS idx_discounts_live_priority ON discounts(priority DESC, id) WHERE deleted_at IS NULL AND is_active;",
        "CREATE INDEX IF NOT EXISTS idx_discount_audits_created ON discount_audits(created_at);"
    ]

    async with engine.begin() as conn:
        for index_sql in indexes:
            await conn.execute(text(index_sql))
        print("所有索引创建成功")

    await engine.dispose()


async def insert_sample_discounts():
    """插入示例折扣数据"""
    engine = create_async_engine(settings.database_url_computed)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    sample_discounts = [
        DiscountCreate(
            code="WELCOME10",
            name="新用户九折",
            description="新注册用户专享",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            max_usage_per_user=1,
            priority=10
        ),
        DiscountCreate(
            code="LOYAL20",
            name="老用户八折",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("20"),
            max_usage_per_user=3,
            priority=5
        ),
        DiscountCreate(
            code="MINUS50",
            name="立减50",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("50"),
            max_usage_per_user=1,
            max_total_usage=1000,
            priority=1
        ),
    ]

    async with session_maker() as session:
        async with session.begin():
            repo = DiscountRepository(session)
            for discount in sample_discounts:
                if await repo.find_by_code(discount.code):
                    print(f"折扣已存在: {discount.name}")
                    continue
                await repo.create(discount)
                print(f"插入折扣: {discount.name}")

    await engine.dispose()


async def main():
    """主函数"""
    print("开始创建折扣系统数据库表...")

    try:
        await create_database_if_not_exists()
        await create_tables()
        await create_indexes()
        await insert_sample_discounts()

        print("折扣系统数据库初始化完成！")

    except Exception as e:
        print(f"数据库初始化失败: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
