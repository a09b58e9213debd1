"""两阶段积分兑换（顾客自助兑换 + 店员确认）。

流程::

    request ──> pending ──confirm──> confirmed
                   │ ────cancel───> cancelled
                   └──(过期)──────> expired

- request：生成兑换码，立即预扣积分并创建 pending 兑换单（同一事务），
  此时不记录积分流水。
- confirm：店员核销，写入 redeemed 流水，奖励兑换次数加1。
- cancel：退回预扣的积分，不记录流水（预扣时也没有记录，账本保持平衡）。
- 过期：24小时内未处理的兑换单在下一次读取、确认、取消或定时清理时
  转为 expired，并退回预扣的积分。

三个终态互斥：状态迁移使用 ``WHERE status = 'pending'`` 的条件更新，
只有一个操作能成功结束同一张兑换单。
"""
from datetime import datetime, timedelta
from typing import List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from config.settings import settings
from database import DatabaseManager
from database.models import (
    Redemption,
    REDEMPTION_PENDING, REDEMPTION_CONFIRMED,
    REDEMPTION_CANCELLED, REDEMPTION_EXPIRED,
    TRANSACTION_REDEEMED,
)

from .codes import generate_redemption_code, generate_unique_code
from .errors import (
    InsufficientBalanceError, LoyaltyError, NotFoundError,
    StateConflictError, ValidationError, store_errors
)
from .ledger import PointsLedger
from .results import OperationResult


class RedemptionProtocol:
    """兑换单协议。

    Attributes:
        db: 数据库管理器。
        ledger: 积分账本，用于预扣和退回积分。
        ttl: 兑换单有效期。
        max_code_attempts: 生成唯一兑换码的最大尝试次数。
    """

    def __init__(self, db: DatabaseManager, ledger: PointsLedger,
                 ttl_hours: Optional[int] = None,
                 max_code_attempts: Optional[int] = None) -> None:
        self.db = db
        self.ledger = ledger
        self.ttl = timedelta(hours=ttl_hours or settings.redemption_ttl_hours)
        self.max_code_attempts = max_code_attempts or settings.code_max_attempts

    def request(self, establishment_id: int, client_id: int, client_name: str,
                current_balance: int, reward_id: int, reward_name: str,
                reward_cost: int) -> OperationResult:
        """顾客申请兑换奖励。

        先用调用方提供的余额快照做预检查；真正的扣减是带条件的原子更新，
        即使快照过期也不会让余额变为负数。

        Args:
            establishment_id: 门店ID。
            client_id: 顾客ID。
            client_name: 顾客姓名（快照）。
            current_balance: 调用方看到的当前余额。
            reward_id: 奖励ID。
            reward_name: 奖励名称（快照）。
            reward_cost: 奖励所需积分（快照，以此为准）。

        Returns:
            OperationResult；成功时 data 含 code 与 redemption_id。

        Raises:
            ValidationError: 成本不是正整数或缺少姓名/奖励名称。
            CodeGenerationError: 无法生成唯一兑换码。
        """
        if isinstance(reward_cost, bool) or not isinstance(reward_cost, int) or reward_cost <= 0:
            raise ValidationError("reward cost must be a positive integer")
        if not client_name or not reward_name:
            raise ValidationError("client name and reward name are required")

        if current_balance < reward_cost:
            return self._reject(InsufficientBalanceError(current_balance, reward_cost))

        with store_errors("request redemption"), self.db.get_session() as session:
            code = generate_unique_code(
                generate_redemption_code,
                lambda c: self.db.redemptions.code_exists(establishment_id, c, session=session),
                self.max_code_attempts,
            )

            if not self.ledger.adjust_balance(client_id, -reward_cost, session=session):
                stored = self.db.clients.get_balance(client_id, session=session)
                if stored is None:
                    return self._reject(NotFoundError("client", client_id))
                return self._reject(InsufficientBalanceError(stored, reward_cost))

            now = datetime.now()
            redemption = self.db.redemptions.create_redemption(
                session=session,
                code=code,
                establishment_id=establishment_id,
                client_id=client_id,
                client_name=client_name,
                reward_id=reward_id,
                reward_name=reward_name,
                reward_cost=reward_cost,
                status=REDEMPTION_PENDING,
                created_at=now,
                expires_at=now + self.ttl,
            )
            session.commit()

        logger.info(
            f"Redemption {code} requested by client {client_id}: "
            f"{reward_name} ({reward_cost} points reserved)"
        )
        return OperationResult.ok(code=code, redemption_id=redemption.id)

    def confirm(self, redemption_id: int, confirmed_by: str) -> OperationResult:
        """店员确认兑换（交付奖励）。

        Returns:
            OperationResult；成功时 data 含 transaction_id。
            兑换单不存在返回 NotFoundError，非 pending 或已过期返回
            StateConflictError（current_state 为当前状态）。
        """
        if not confirmed_by:
            raise ValidationError("confirming user is required")

        now = datetime.now()
        with store_errors("confirm redemption"), self.db.get_session() as session:
            redemption = self.db.redemptions.get(redemption_id, session=session)
            if redemption is None:
                return self._reject(NotFoundError("redemption", redemption_id))
            if redemption.status != REDEMPTION_PENDING:
                return self._reject(self._already(redemption.status))

            if now > redemption.expires_at:
                self._expire_in_session(redemption, session)
                session.commit()
                return self._reject(self._already(REDEMPTION_EXPIRED))

            if not self.db.redemptions.transition(
                    redemption_id, REDEMPTION_PENDING, REDEMPTION_CONFIRMED,
                    session=session, confirmed_at=now, confirmed_by=confirmed_by):
                return self._reject(self._already(self._current_status(redemption_id, session)))

            transaction = self.db.transactions.append(
                redemption.establishment_id, redemption.client_id,
                TRANSACTION_REDEEMED, redemption.reward_cost, confirmed_by,
                reward_id=redemption.reward_id,
                notes=f"Redemption {redemption.code} confirmed: {redemption.reward_name}",
                session=session
            )
            self.db.rewards.increment_redemption_count(redemption.reward_id, session=session)
            session.commit()

        logger.info(f"Redemption {redemption.code} confirmed by {confirmed_by}")
        return OperationResult.ok(transaction_id=transaction.id)

    def cancel(self, redemption_id: int,
               client_current_balance: Optional[int] = None) -> OperationResult:
        """取消 pending 兑换单并退回预扣的积分。

        退回使用原子增量 ``balance + reward_cost``；
        ``client_current_balance`` 仅用于日志对照，不参与计算。

        Returns:
            OperationResult；成功时 data 含 new_balance。
        """
        now = datetime.now()
        with store_errors("cancel redemption"), self.db.get_session() as session:
            redemption = self.db.redemptions.get(redemption_id, session=session)
            if redemption is None:
                return self._reject(NotFoundError("redemption", redemption_id))
            if redemption.status != REDEMPTION_PENDING:
                return self._reject(StateConflictError(
                    f"only pending redemptions can be cancelled, this one is {redemption.status}",
                    current_state=redemption.status,
                ))

            if now > redemption.expires_at:
                self._expire_in_session(redemption, session)
                session.commit()
                return self._reject(self._already(REDEMPTION_EXPIRED))

            if not self.db.redemptions.transition(
                    redemption_id, REDEMPTION_PENDING, REDEMPTION_CANCELLED,
                    session=session, cancelled_at=now):
                return self._reject(self._already(self._current_status(redemption_id, session)))

            self._release(redemption, session)
            new_balance = self.db.clients.get_balance(redemption.client_id, session=session)
            session.commit()

        if client_current_balance is not None and new_balance is not None \
                and client_current_balance + redemption.reward_cost != new_balance:
            logger.debug(
                f"Client {redemption.client_id} balance snapshot {client_current_balance} "
                f"was stale, stored balance is now {new_balance}"
            )
        logger.info(
            f"Redemption {redemption.code} cancelled, "
            f"{redemption.reward_cost} points returned to client {redemption.client_id}"
        )
        return OperationResult.ok(new_balance=new_balance)

    # ================================================================
    # 过期处理
    # ================================================================

    def expire(self, redemption_id: int) -> bool:
        """将已过期的 pending 兑换单标记为 expired 并退回积分。

        Returns:
            是否由本次调用完成了过期处理。未过期或已结束的兑换单返回 False。
        """
        now = datetime.now()
        with store_errors("expire redemption"), self.db.get_session() as session:
            redemption = self.db.redemptions.get(redemption_id, session=session)
            if (redemption is None or redemption.status != REDEMPTION_PENDING
                    or now <= redemption.expires_at):
                return False
            expired = self._expire_in_session(redemption, session)
            session.commit()
            return expired

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """批量处理所有已过期的 pending 兑换单（定时清理任务调用）。

        Returns:
            本次处理的兑换单数量。
        """
        now = now or datetime.now()
        count = 0
        with store_errors("expire stale redemptions"), self.db.get_session() as session:
            for redemption in self.db.redemptions.list_stale_pending(now, session=session):
                if self._expire_in_session(redemption, session):
                    count += 1
            session.commit()

        if count:
            logger.info(f"Expired {count} stale redemptions")
        return count

    def _expire_in_session(self, redemption: Redemption, session: Session) -> bool:
        if not self.db.redemptions.transition(
                redemption.id, REDEMPTION_PENDING, REDEMPTION_EXPIRED, session=session):
            return False
        self._release(redemption, session)
        logger.info(
            f"Redemption {redemption.code} expired, "
            f"{redemption.reward_cost} points returned to client {redemption.client_id}"
        )
        return True

    def _release(self, redemption: Redemption, session: Session) -> None:
        """退回预扣的积分。"""
        if not self.ledger.adjust_balance(
                redemption.client_id, redemption.reward_cost, session=session):
            # 顾客已被删除
            logger.warning(
                f"Client {redemption.client_id} not found, "
                f"could not return {redemption.reward_cost} points"
            )

    # ================================================================
    # 查询（读取时顺带处理过期）
    # ================================================================

    def get(self, redemption_id: int) -> Optional[Redemption]:
        """按ID获取兑换单，发现已过期时先完成过期处理。"""
        with store_errors("load redemption"):
            redemption = self.db.redemptions.get(redemption_id)
        return self._refresh_if_stale(redemption)

    def find_by_code(self, establishment_id: int, code: str) -> Optional[Redemption]:
        """按兑换码查询（不区分大小写，忽略首尾空白）。"""
        with store_errors("find redemption"):
            redemption = self.db.redemptions.get_by_code(establishment_id, code)
        return self._refresh_if_stale(redemption)

    def list_pending_by_client(self, client_id: int) -> List[Redemption]:
        with store_errors("list pending redemptions"):
            pending = self.db.redemptions.list_pending_by_client(client_id)
        return self._drop_stale(pending)

    def list_pending_by_establishment(self, establishment_id: int) -> List[Redemption]:
        with store_errors("list pending redemptions"):
            pending = self.db.redemptions.list_pending_by_establishment(establishment_id)
        return self._drop_stale(pending)

    def list_by_client(self, client_id: int) -> List[Redemption]:
        """顾客的全部兑换历史。"""
        self.list_pending_by_client(client_id)
        with store_errors("list redemptions"):
            return self.db.redemptions.list_by_client(client_id)

    def _refresh_if_stale(self, redemption: Optional[Redemption]) -> Optional[Redemption]:
        if redemption is None or not self._is_stale(redemption):
            return redemption
        self.expire(redemption.id)
        with store_errors("load redemption"):
            return self.db.redemptions.get(redemption.id)

    def _drop_stale(self, redemptions: List[Redemption]) -> List[Redemption]:
        fresh = []
        for redemption in redemptions:
            if self._is_stale(redemption):
                self.expire(redemption.id)
            else:
                fresh.append(redemption)
        return fresh

    @staticmethod
    def _is_stale(redemption: Redemption) -> bool:
        return redemption.status == REDEMPTION_PENDING and datetime.now() > redemption.expires_at

    def _current_status(self, redemption_id: int, session: Session) -> str:
        row = session.query(Redemption.status).filter(Redemption.id == redemption_id).first()
        return row[0] if row else REDEMPTION_PENDING

    @staticmethod
    def _already(status: str) -> StateConflictError:
        if status == REDEMPTION_EXPIRED:
            return StateConflictError("this redemption has expired", current_state=status)
        return StateConflictError(f"this redemption is already {status}", current_state=status)

    @staticmethod
    def _reject(error: LoyaltyError) -> OperationResult:
        logger.warning(f"Redemption operation rejected: {error.message}")
        return OperationResult.fail(error)
