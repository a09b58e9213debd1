"""业务记录仓库 —— 核心业务数据的数据访问层。

管理系统中的核心业务记录（预约、积分流水、兑换单），
这些记录由日常经营活动产生，状态变化由 loyalty 核心驱动。
"""
from typing import Optional, List, Dict, Any
from datetime import date, datetime, time, timedelta
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import (
    Appointment, Transaction, Redemption,
    APPOINTMENT_CANCELLED, REDEMPTION_PENDING,
    TRANSACTION_EARNED, TRANSACTION_REDEEMED
)


def day_bounds(target_date: date):
    """返回本地自然日的起止时间 ``[00:00:00, 23:59:59.999999]``。"""
    if isinstance(target_date, datetime):
        target_date = target_date.date()
    start = datetime.combine(target_date, time.min)
    end = datetime.combine(target_date, time.max)
    return start, end


class AppointmentRepository(BaseCRUD):
    """预约 仓库。

    只负责存取，状态迁移规则与冲突检查由 AppointmentManager 实现。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_appointment(self, establishment_id: int, client_id: int,
                           service_id: int, employee_id: int,
                           start: datetime, duration: int,
                           notes: Optional[str] = None,
                           session: Optional[Session] = None) -> Appointment:
        """创建预约，初始状态为 pending。

        Args:
            establishment_id: 门店ID。
            client_id: 顾客ID。
            service_id: 服务ID。
            employee_id: 员工ID。
            start: 开始时间。
            duration: 时长（分钟）。
            notes: 备注（可选）。
            session: 外部会话（可选）。

        Returns:
            Appointment 对象。
        """
        return self.create(
            Appointment, session=session,
            establishment_id=establishment_id, client_id=client_id,
            service_id=service_id, employee_id=employee_id,
            date=start, duration=duration, notes=notes or None
        )

    def get(self, appointment_id: int,
            session: Optional[Session] = None) -> Optional[Appointment]:
        return self.get_by_id(Appointment, appointment_id, session=session)

    def list_by_establishment(self, establishment_id: int,
                              start: datetime, end: datetime,
                              session: Optional[Session] = None
                              ) -> List[Appointment]:
        """查询门店在时间范围 ``[start, end]`` 内的预约（日历/月视图）。"""
        def _query(sess):
            return sess.query(Appointment).filter(
                Appointment.establishment_id == establishment_id,
                Appointment.date >= start,
                Appointment.date <= end
            ).order_by(Appointment.date.asc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_by_employee(self, employee_id: int, target_date: date,
                         session: Optional[Session] = None
                         ) -> List[Appointment]:
        """查询员工在某个本地自然日的所有预约（含已取消）。"""
        start, end = day_bounds(target_date)

        def _query(sess):
            return sess.query(Appointment).filter(
                Appointment.employee_id == employee_id,
                Appointment.date >= start,
                Appointment.date <= end
            ).order_by(Appointment.date.asc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_by_client(self, client_id: int,
                       session: Optional[Session] = None) -> List[Appointment]:
        """查询顾客的预约，按时间倒序。"""
        def _query(sess):
            return sess.query(Appointment).filter(
                Appointment.client_id == client_id
            ).order_by(Appointment.date.desc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def find_overlapping(self, employee_id: int, start: datetime,
                         duration: int,
                         session: Optional[Session] = None
                         ) -> List[Appointment]:
        """查询与 ``[start, start+duration)`` 相交的未取消预约。

        相交判断为半开区间：首尾相接不算冲突。
        候选范围按该员工最长的预约时长向前回溯，可覆盖跨越午夜的预约。
        """
        end = start + timedelta(minutes=duration)

        def _query(sess):
            longest = sess.query(func.max(Appointment.duration)).filter(
                Appointment.employee_id == employee_id,
                Appointment.status != APPOINTMENT_CANCELLED
            ).scalar()
            if longest is None:
                return []
            candidates = sess.query(Appointment).filter(
                Appointment.employee_id == employee_id,
                Appointment.status != APPOINTMENT_CANCELLED,
                Appointment.date > start - timedelta(minutes=longest),
                Appointment.date < end
            ).order_by(Appointment.date.asc()).all()
            return [
                apt for apt in candidates
                if start < apt.date + timedelta(minutes=apt.duration)
            ]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def set_status(self, appointment_id: int, status: str,
                   session: Optional[Session] = None) -> Optional[Appointment]:
        """更新预约状态。"""
        return self.update_by_id(
            Appointment, appointment_id, session=session,
            status=status, updated_at=datetime.now()
        )


class TransactionRepository(BaseCRUD):
    """积分流水 仓库。

    流水只追加不修改，本仓库不提供更新和删除方法。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def append(self, establishment_id: int, client_id: int, type: str,
               amount: int, created_by: str,
               reward_id: Optional[int] = None,
               appointment_id: Optional[int] = None,
               notes: Optional[str] = None,
               session: Optional[Session] = None) -> Transaction:
        """追加一条积分流水。

        Args:
            establishment_id: 门店ID。
            client_id: 顾客ID。
            type: 流水类型（earned/redeemed）。
            amount: 积分数量（正整数）。
            created_by: 操作人标识。
            reward_id: 关联奖励ID（可选）。
            appointment_id: 关联预约ID（可选）。
            notes: 备注（可选）。
            session: 外部会话（可选）。

        Returns:
            Transaction 对象。
        """
        return self.create(
            Transaction, session=session,
            establishment_id=establishment_id, client_id=client_id,
            type=type, amount=amount, created_by=created_by,
            reward_id=reward_id, appointment_id=appointment_id,
            notes=notes or None
        )

    def get(self, transaction_id: int,
            session: Optional[Session] = None) -> Optional[Transaction]:
        return self.get_by_id(Transaction, transaction_id, session=session)

    def list_by_client(self, client_id: int,
                       session: Optional[Session] = None) -> List[Transaction]:
        """查询顾客的积分流水，按时间倒序。"""
        def _query(sess):
            return sess.query(Transaction).filter(
                Transaction.client_id == client_id
            ).order_by(Transaction.created_at.desc(), Transaction.id.desc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_by_establishment(self, establishment_id: int,
                              session: Optional[Session] = None
                              ) -> List[Transaction]:
        def _query(sess):
            return sess.query(Transaction).filter(
                Transaction.establishment_id == establishment_id
            ).order_by(Transaction.created_at.desc(), Transaction.id.desc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def sum_by_establishment_and_day(self, establishment_id: int,
                                     target_date: date,
                                     session: Optional[Session] = None
                                     ) -> Dict[str, int]:
        """统计门店某日的积分发放与兑换。

        Returns:
            字典，包含 points_earned、points_redeemed、transactions_count。
        """
        start, end = day_bounds(target_date)

        def _query(sess):
            rows = sess.query(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount), 0),
                func.count(Transaction.id)
            ).filter(
                Transaction.establishment_id == establishment_id,
                Transaction.created_at >= start,
                Transaction.created_at <= end
            ).group_by(Transaction.type).all()

            stats = {"points_earned": 0, "points_redeemed": 0, "transactions_count": 0}
            for tx_type, total, count in rows:
                if tx_type == TRANSACTION_EARNED:
                    stats["points_earned"] = int(total)
                elif tx_type == TRANSACTION_REDEEMED:
                    stats["points_redeemed"] = int(total)
                stats["transactions_count"] += count
            return stats

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class RedemptionRepository(BaseCRUD):
    """兑换单 仓库。

    ``transition`` 以条件更新（WHERE status = 当前状态）实现比较并交换，
    保证同一兑换单只会被确认、取消、过期中的一个操作结束。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_redemption(self, session: Optional[Session] = None,
                          **fields: Any) -> Redemption:
        """创建兑换单（字段见 Redemption 模型）。"""
        fields.setdefault("status", REDEMPTION_PENDING)
        return self.create(Redemption, session=session, **fields)

    def get(self, redemption_id: int,
            session: Optional[Session] = None) -> Optional[Redemption]:
        return self.get_by_id(Redemption, redemption_id, session=session)

    def get_by_code(self, establishment_id: int, code: str,
                    session: Optional[Session] = None) -> Optional[Redemption]:
        """按兑换码查询（去除首尾空白并转大写后匹配）。"""
        normalized = code.strip().upper()

        def _query(sess):
            return sess.query(Redemption).filter(
                Redemption.establishment_id == establishment_id,
                Redemption.code == normalized
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def code_exists(self, establishment_id: int, code: str,
                    session: Optional[Session] = None) -> bool:
        return self.get_by_code(establishment_id, code, session=session) is not None

    def update_redemption(self, redemption_id: int,
                          session: Optional[Session] = None,
                          **fields: Any) -> Optional[Redemption]:
        return self.update_by_id(Redemption, redemption_id, session=session, **fields)

    def transition(self, redemption_id: int, from_status: str, to_status: str,
                   session: Optional[Session] = None, **fields: Any) -> bool:
        """条件更新兑换单状态。

        Args:
            redemption_id: 兑换单ID。
            from_status: 期望的当前状态。
            to_status: 目标状态。
            session: 外部会话（可选）。
            **fields: 同时更新的其他字段（confirmed_at 等）。

        Returns:
            是否更新成功；当前状态已不是 from_status 时返回 False。
        """
        stmt = (
            update(Redemption)
            .where(Redemption.id == redemption_id)
            .where(Redemption.status == from_status)
            .values(status=to_status, **fields)
            .execution_options(synchronize_session=False)
        )

        if session:
            return session.execute(stmt).rowcount == 1

        with self._get_session() as sess:
            updated = sess.execute(stmt).rowcount == 1
            sess.commit()
            return updated

    def list_pending_by_client(self, client_id: int,
                               session: Optional[Session] = None
                               ) -> List[Redemption]:
        def _query(sess):
            return sess.query(Redemption).filter(
                Redemption.client_id == client_id,
                Redemption.status == REDEMPTION_PENDING
            ).order_by(Redemption.created_at.desc(), Redemption.id.desc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_pending_by_establishment(self, establishment_id: int,
                                      session: Optional[Session] = None
                                      ) -> List[Redemption]:
        def _query(sess):
            return sess.query(Redemption).filter(
                Redemption.establishment_id == establishment_id,
                Redemption.status == REDEMPTION_PENDING
            ).order_by(Redemption.created_at.desc(), Redemption.id.desc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_by_client(self, client_id: int,
                       session: Optional[Session] = None) -> List[Redemption]:
        """查询顾客的全部兑换历史，按时间倒序。"""
        def _query(sess):
            return sess.query(Redemption).filter(
                Redemption.client_id == client_id
            ).order_by(Redemption.created_at.desc(), Redemption.id.desc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_stale_pending(self, now: datetime,
                           session: Optional[Session] = None
                           ) -> List[Redemption]:
        """查询已过期但仍为 pending 的兑换单。"""
        def _query(sess):
            return sess.query(Redemption).filter(
                Redemption.status == REDEMPTION_PENDING,
                Redemption.expires_at < now
            ).order_by(Redemption.expires_at.asc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)
