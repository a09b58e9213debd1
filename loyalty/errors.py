"""积分与预约核心的错误类型。

业务规则类错误（状态冲突、余额不足、未找到）在兑换/奖励相关操作中
通过 OperationResult 以失败结果返回，其余场景直接抛出。
数据库故障统一包装为 InfrastructureError 向上传播，核心层不做自动重试。
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError


class LoyaltyError(Exception):
    """所有核心错误的基类。"""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LoyaltyError):
    """输入缺失或格式错误（空名称、非正数的积分/时长/成本等）。"""

    code = "validation_error"


class NotFoundError(LoyaltyError):
    """引用的实体不存在。"""

    code = "not_found"

    def __init__(self, entity: str, entity_id) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(LoyaltyError):
    """实体当前状态不允许该操作，消息中带有当前状态。"""

    code = "state_conflict"

    def __init__(self, message: str, current_state: Optional[str] = None) -> None:
        super().__init__(message)
        self.current_state = current_state


class InsufficientBalanceError(LoyaltyError):
    """积分余额不足。"""

    code = "insufficient_balance"

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(
            f"insufficient balance: has {balance}, needs {required}"
        )
        self.balance = balance
        self.required = required


class InfrastructureError(LoyaltyError):
    """存储不可用或配置错误。"""

    code = "infrastructure_error"


class CodeGenerationError(InfrastructureError):
    """多次重试后仍无法生成唯一编码。"""

    code = "code_generation_failed"


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """把 SQLAlchemy 异常记录日志后包装为 InfrastructureError。

    Args:
        operation: 操作名称，用于日志和错误消息。
    """
    try:
        yield
    except SQLAlchemyError as e:
        logger.exception(f"Store failure during {operation}")
        raise InfrastructureError(f"{operation} failed, please try again") from e
