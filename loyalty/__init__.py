"""积分与预约核心：可预约时段计算、预约生命周期、积分账本与两阶段兑换。"""
from .errors import (
    LoyaltyError, ValidationError, NotFoundError, StateConflictError,
    InsufficientBalanceError, InfrastructureError, CodeGenerationError,
)
from .results import OperationResult
from .service import LoyaltyService

__all__ = [
    "LoyaltyService",
    "OperationResult",
    "LoyaltyError",
    "ValidationError",
    "NotFoundError",
    "StateConflictError",
    "InsufficientBalanceError",
    "InfrastructureError",
    "CodeGenerationError",
]
