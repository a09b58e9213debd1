"""积分账本。

顾客的 balance 字段是余额的唯一事实来源；transactions 表是审计流水，
不会被重新汇总来计算余额。所有修改余额的操作都与对应流水在同一事务中提交，
余额使用原子增减（balance = balance + delta），不会覆盖并发写入。
"""
from datetime import date
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from database import DatabaseManager
from database.models import Client, Transaction, TRANSACTION_EARNED, TRANSACTION_REDEEMED

from .errors import (
    InsufficientBalanceError, NotFoundError, StateConflictError,
    ValidationError, store_errors
)
from .results import OperationResult


def _require_positive_int(value, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer")


class PointsLedger:
    """积分账本：发放积分、店内直接兑换和余额维护。

    Attributes:
        db: 数据库管理器。
    """

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    def earn(self, client_id: int, amount: int, acting_user_id: str,
             notes: Optional[str] = None,
             appointment_id: Optional[int] = None) -> int:
        """为顾客发放积分。

        余额增加、更新 last_visit，并追加一条 earned 流水。

        Args:
            client_id: 顾客ID。
            amount: 积分数量，正整数。
            acting_user_id: 操作的店主/员工标识。
            notes: 备注（可选）。
            appointment_id: 关联预约ID（可选）。

        Returns:
            新流水的ID。

        Raises:
            ValidationError: 数量不是正整数或缺少操作人。
            NotFoundError: 顾客不存在。
        """
        _require_positive_int(amount, "amount")
        if not acting_user_id:
            raise ValidationError("acting user is required")

        with store_errors("earn points"), self.db.get_session() as session:
            client = self.db.clients.get(client_id, session=session)
            if client is None:
                raise NotFoundError("client", client_id)

            self.db.clients.adjust_balance(
                client_id, amount, touch_last_visit=True, session=session
            )
            transaction = self.db.transactions.append(
                client.establishment_id, client_id, TRANSACTION_EARNED, amount,
                acting_user_id, appointment_id=appointment_id, notes=notes,
                session=session
            )
            session.commit()

        logger.info(f"Client {client_id} earned {amount} points (by {acting_user_id})")
        return transaction.id

    def redeem_direct(self, reward_id: int, client_id: int,
                      acting_user_id: str) -> OperationResult:
        """店内直接兑换奖励（单阶段，不经过兑换码流程）。

        校验奖励存在且启用、余额充足后，扣减余额、追加 redeemed 流水
        并将奖励的兑换次数加1，三者在同一事务中提交。

        Returns:
            OperationResult；成功时 data 含 transaction_id 与 new_balance。
            失败时 error 为 NotFoundError / StateConflictError /
            InsufficientBalanceError。
        """
        if not acting_user_id:
            raise ValidationError("acting user is required")

        with store_errors("redeem reward"), self.db.get_session() as session:
            reward = self.db.rewards.get(reward_id, session=session)
            if reward is None:
                return self._reject(NotFoundError("reward", reward_id))
            if not reward.is_active:
                return self._reject(StateConflictError(
                    f"reward {reward.name} is no longer available",
                    current_state="inactive",
                ))

            client = self.db.clients.get(client_id, session=session)
            if client is None:
                return self._reject(NotFoundError("client", client_id))

            balance = self.db.clients.get_balance(client_id, session=session)
            if balance < reward.cost or not self.db.clients.adjust_balance(
                    client_id, -reward.cost, session=session):
                return self._reject(InsufficientBalanceError(balance, reward.cost))

            transaction = self.db.transactions.append(
                client.establishment_id, client_id, TRANSACTION_REDEEMED,
                reward.cost, acting_user_id, reward_id=reward.id,
                notes=f"Redeemed: {reward.name}", session=session
            )
            self.db.rewards.increment_redemption_count(reward.id, session=session)
            new_balance = self.db.clients.get_balance(client_id, session=session)
            session.commit()

        logger.info(
            f"Client {client_id} redeemed reward {reward_id} "
            f"for {reward.cost} points (by {acting_user_id})"
        )
        return OperationResult.ok(transaction_id=transaction.id, new_balance=new_balance)

    def adjust_balance(self, client_id: int, delta: int,
                       session: Optional[Session] = None) -> bool:
        """余额的原始增减操作，不记录流水。

        供兑换流程预扣/退回积分使用。

        Returns:
            是否成功；顾客不存在或余额会变为负数时返回 False。
        """
        with store_errors("adjust balance"):
            return self.db.clients.adjust_balance(client_id, delta, session=session)

    def set_balance(self, client_id: int, new_balance: int) -> Client:
        """管理员直接设置余额，不记录流水。

        Raises:
            ValidationError: 余额为负数或不是整数。
            NotFoundError: 顾客不存在。
        """
        if isinstance(new_balance, bool) or not isinstance(new_balance, int) or new_balance < 0:
            raise ValidationError("balance must be a non-negative integer")

        with store_errors("set balance"):
            client = self.db.clients.set_balance(client_id, new_balance)
        if client is None:
            raise NotFoundError("client", client_id)

        logger.info(f"Client {client_id} balance set to {new_balance} by admin edit")
        return client

    def get_balance(self, client_id: int) -> int:
        with store_errors("read balance"):
            balance = self.db.clients.get_balance(client_id)
        if balance is None:
            raise NotFoundError("client", client_id)
        return balance

    def history(self, client_id: int) -> List[Transaction]:
        """顾客的积分流水，最新的在前。"""
        with store_errors("list transactions"):
            return self.db.transactions.list_by_client(client_id)

    def daily_stats(self, establishment_id: int,
                    target_date: Optional[date] = None) -> Dict[str, int]:
        """门店某日（默认今天）的积分发放/兑换汇总。"""
        with store_errors("daily stats"):
            return self.db.transactions.sum_by_establishment_and_day(
                establishment_id, target_date or date.today()
            )

    @staticmethod
    def _reject(error) -> OperationResult:
        logger.warning(f"Redemption rejected: {error.message}")
        return OperationResult.fail(error)
