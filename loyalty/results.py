"""操作结果类型。"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import LoyaltyError


@dataclass
class OperationResult:
    """业务操作结果。

    兑换、奖励等面向界面的操作不抛出业务规则异常，
    而是返回 ``success=False`` 并携带具体错误，调用方据此渲染提示。

    Attributes:
        success: 是否成功。
        error: 失败时的错误对象。
        data: 成功时附带的数据（如兑换码、兑换单ID）。
    """
    success: bool
    error: Optional[LoyaltyError] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: LoyaltyError) -> "OperationResult":
        return cls(success=False, error=error)

    @property
    def message(self) -> Optional[str]:
        """失败原因文本，成功时为 None。"""
        return self.error.message if self.error else None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def __getitem__(self, key: str) -> Any:
        return self.data[key]
