"""
全局异常处理器
"""

import logging

from fastapi import Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from user_discounts.core.exceptions import DiscountException

logger = logging.getLogger(__name__)


async def business_exception_handler(request: Request, exc: DiscountException) -> JSONResponse:
    """折扣业务异常，按异常自带的状态码返回"""
    logger.warning(f"折扣业务异常 {request.url.path}: {exc.error_code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求参数校验失败"""
    return JSONResponse(
        status_code=422,
        content={
            "error_code": "VALIDATION_ERROR",
            "message": "请求参数校验失败",
            "details": {"errors": exc.errors()}
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {}
        }
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """数据库异常统一视为暂时不可用"""
    logger.error(f"数据库异常 {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "error_code": "DATABASE_ERROR",
            "message": "数据库暂时不可用，请稍后重试",
            "details": {}
        }
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"未处理的异常 {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_ERROR",
            "message": "服务器内部错误",
            "details": {}
        }
    )
