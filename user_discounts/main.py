from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
import uvicorn

from user_discounts.core.config import settings
from user_discounts.core.redis import redis_manager
from user_discounts.core.database import init_database, close_database
from user_discounts.core.exceptions import DiscountException
from user_discounts.api.health import router as health_router
from user_discounts.api.exceptions import (
    validation_exception_handler,
    http_exception_handler,
    database_exception_handler,
    general_exception_handler,
    business_exception_handler
)
from user_discounts.services.discount_service import create_discount_service

# 简化日志配置
import logging

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("正在启动折扣服务")

    try:
        await init_database()
        logger.info("PostgreSQL数据库初始化成功")

        if settings.discount_enable_notifications:
            await redis_manager.init_redis()
            logger.info("Redis初始化成功")

        # 叠加策略配置错误在启动时即失败；上层路由通过 request.app.state.discount_service 取用
        app.state.discount_service = create_discount_service(settings)

        logger.info("应用启动完成")

    except Exception as e:
        logger.error(f"应用启动失败: {e}")
        raise

    yield

    logger.info("正在关闭应用")
    await close_database()
    await redis_manager.close_redis()
    logger.info("应用关闭完成")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="用户折扣 - 折扣分配、叠加计算与使用次数台账",
    debug=settings.debug,
    lifespan=lifespan
)

app.include_router(health_router)

# 注册异常处理器
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(SQLAlchemyError, database_exception_handler)
app.add_exception_handler(DiscountException, business_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)


@app.get("/")
async def root():
    """根路径"""
    return {
        "message": f"欢迎使用 {settings.app_name}",
        "version": settings.app_version,
        "health": "/health",
    }


if __name__ == "__main__":
    uvicorn.run(
        "user_discounts.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
