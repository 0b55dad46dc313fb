"""
折扣业务异常定义

结构性错误（折扣不存在、重复分配、叠加策略配置错误等）以异常形式抛出；
资格校验失败在计算/应用折扣时不抛异常，而是返回零折扣结果。
"""

from typing import Any, Dict, Optional


class DiscountException(Exception):
    """折扣业务异常基类"""

    status_code: int = 400
    error_code: str = "DISCOUNT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class DiscountNotFoundException(DiscountException):
    """折扣不存在"""

    status_code = 404
    error_code = "DISCOUNT_NOT_FOUND"

    def __init__(self, discount_id: Any):
        super().__init__(f"折扣不存在: {discount_id}", {"discount_id": discount_id})
        self.discount_id = discount_id


class DiscountNotAssignedException(DiscountException):
    """用户没有该折扣的有效分配"""

    status_code = 404
    error_code = "DISCOUNT_NOT_ASSIGNED"

    def __init__(self, user_id: str, discount_id: int):
        super().__init__(
            f"用户 {user_id} 未分配折扣 {discount_id}",
            {"user_id": user_id, "discount_id": discount_id}
        )


class DiscountInactiveException(DiscountException):
    """折扣已停用或尚未开始"""

    status_code = 409
    error_code = "DISCOUNT_INACTIVE"

    def __init__(self, discount_id: int, reason: str = "折扣已停用"):
        super().__init__(f"{reason}: {discount_id}", {"discount_id": discount_id})


class DiscountExpiredException(DiscountException):
    """折扣已过期"""

    status_code = 409
    error_code = "DISCOUNT_EXPIRED"

    def __init__(self, discount_id: int):
        super().__init__(f"折扣已过期: {discount_id}", {"discount_id": discount_id})


class UsageLimitExceededException(DiscountException):
    """折扣使用次数已达上限"""

    status_code = 409
    error_code = "USAGE_LIMIT_EXCEEDED"

    def __init__(self, discount_id: int, user_id: Optional[str] = None):
        super().__init__(
            f"折扣使用次数已达上限: {discount_id}",
            {"discount_id": discount_id, "user_id": user_id}
        )
        self.discount_id = discount_id
        self.user_id = user_id


class DiscountAlreadyAssignedException(DiscountException):
    """折扣已分配给该用户"""

    status_code = 409
    error_code = "DISCOUNT_ALREADY_ASSIGNED"

    def __init__(self, user_id: str, discount_id: int):
        super().__init__(
            f"折扣 {discount_id} 已分配给用户 {user_id}",
            {"user_id": user_id, "discount_id": discount_id}
        )


class InvalidStackingStrategyException(DiscountException):
    """叠加策略配置错误，启动时即失败"""

    status_code = 500
    error_code = "INVALID_STACKING_STRATEGY"

    def __init__(self, message: str):
        super().__init__(message)


class DiscountUnavailableException(DiscountException):
    """存储不可用，调用方可自行重试"""

    status_code = 503
    error_code = "DISCOUNT_STORE_UNAVAILABLE"

    def __init__(self, operation: str, error: Optional[BaseException] = None):
        super().__init__(
            f"折扣存储暂时不可用: {operation}",
            {"operation": operation, "error": str(error) if error else None}
        )
