"""实体仓库 —— 基础实体的数据访问层。

管理系统中的基础实体（门店、顾客、员工、服务、奖励），
这些实体由店主通过后台维护，积分与预约核心只通过这里的窄接口读写它们。

每个仓库继承 BaseCRUD 获得通用能力，并添加领域特定的查询方法。
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import (
    Establishment, Client, Employee, Service, Reward
)


class EstablishmentRepository(BaseCRUD):
    """门店 仓库。

    当前部署为单门店模式，``get_the_establishment`` 返回唯一的门店。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_establishment(self, name: str,
                             hours: Optional[Dict[str, Any]] = None,
                             session: Optional[Session] = None,
                             **fields: Any) -> Establishment:
        """创建门店。

        Args:
            name: 门店名称。
            hours: 营业时间配置（可选）。
            session: 外部会话（可选）。
            **fields: 其他字段（phone、address、currency_name 等）。

        Returns:
            Establishment 对象。
        """
        return self.create(
            Establishment, session=session,
            name=name, hours=hours or {}, **fields
        )

    def get(self, establishment_id: int,
            session: Optional[Session] = None) -> Optional[Establishment]:
        return self.get_by_id(Establishment, establishment_id, session=session)

    def get_the_establishment(self,
                              session: Optional[Session] = None
                              ) -> Optional[Establishment]:
        """获取系统中唯一的门店（按创建顺序取第一个）。"""
        def _query(sess):
            return sess.query(Establishment).order_by(Establishment.id).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def update_hours(self, establishment_id: int, hours: Dict[str, Any],
                     session: Optional[Session] = None
                     ) -> Optional[Establishment]:
        """更新营业时间。"""
        return self.update_by_id(
            Establishment, establishment_id, session=session, hours=hours
        )


class ClientRepository(BaseCRUD):
    """顾客 仓库。

    余额的修改只通过 ``adjust_balance``（原子增减）或 ``set_balance``
    （管理员直接编辑）进行。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_client(self, establishment_id: int, name: str, code: str,
                      email: Optional[str] = None,
                      phone: Optional[str] = None,
                      user_id: Optional[str] = None,
                      session: Optional[Session] = None) -> Client:
        """创建顾客，初始余额为0。

        Args:
            establishment_id: 门店ID。
            name: 顾客姓名。
            code: 已确认唯一的6位顾客码。
            email: 邮箱（可选）。
            phone: 电话（可选）。
            user_id: 登录用户标识（可选）。
            session: 外部会话（可选）。

        Returns:
            Client 对象。
        """
        return self.create(
            Client, session=session,
            establishment_id=establishment_id, name=name, code=code,
            email=email, phone=phone, user_id=user_id, balance=0
        )

    def get(self, client_id: int,
            session: Optional[Session] = None) -> Optional[Client]:
        return self.get_by_id(Client, client_id, session=session)

    def get_by_code(self, establishment_id: int, code: str,
                    session: Optional[Session] = None) -> Optional[Client]:
        """按顾客码查询（忽略连字符与大小写）。

        Args:
            establishment_id: 门店ID。
            code: 顾客码，支持 ``ABC-123`` 或 ``abc123`` 形式。

        Returns:
            Client 对象，不存在返回 None。
        """
        normalized = code.replace("-", "").strip().upper()

        def _query(sess):
            return sess.query(Client).filter(
                Client.establishment_id == establishment_id,
                Client.code == normalized
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def code_exists(self, establishment_id: int, code: str,
                    session: Optional[Session] = None) -> bool:
        return self.get_by_code(establishment_id, code, session=session) is not None

    def list_by_establishment(self, establishment_id: int,
                              session: Optional[Session] = None
                              ) -> List[Client]:
        return self.get_all(
            Client, filters={"establishment_id": establishment_id},
            order_by=Client.id, session=session
        )

    def search(self, establishment_id: int, keyword: str,
               session: Optional[Session] = None) -> List[Client]:
        """按姓名、邮箱、电话或顾客码搜索顾客。

        Args:
            establishment_id: 门店ID。
            keyword: 搜索关键词，为空时返回全部顾客。

        Returns:
            匹配的顾客列表。
        """
        keyword = keyword.strip()
        if not keyword:
            return self.list_by_establishment(establishment_id, session=session)
        code_keyword = keyword.replace("-", "").upper()

        def _query(sess):
            return sess.query(Client).filter(
                Client.establishment_id == establishment_id,
                or_(
                    Client.name.ilike(f"%{keyword}%"),
                    Client.email.ilike(f"%{keyword}%"),
                    Client.phone.contains(keyword),
                    Client.code.contains(code_keyword)
                )
            ).order_by(Client.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def top_by_balance(self, establishment_id: int, limit: int = 10,
                       session: Optional[Session] = None) -> List[Client]:
        """按余额从高到低返回前 N 位顾客。"""
        def _query(sess):
            return sess.query(Client).filter(
                Client.establishment_id == establishment_id
            ).order_by(Client.balance.desc()).limit(limit).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def adjust_balance(self, client_id: int, delta: int,
                       touch_last_visit: bool = False,
                       session: Optional[Session] = None) -> bool:
        """原子地增减顾客余额。

        生成单条 ``UPDATE clients SET balance = balance + :delta
        WHERE id = :id AND balance + :delta >= 0``，不依赖调用方读到的旧值，
        并发操作不会相互覆盖。

        Args:
            client_id: 顾客ID。
            delta: 变化量，正数为增加，负数为扣减。
            touch_last_visit: 是否同时更新 last_visit。
            session: 外部会话（可选）。

        Returns:
            是否更新成功。顾客不存在或扣减后余额为负时返回 False。
        """
        values: Dict[str, Any] = {"balance": Client.balance + delta}
        if touch_last_visit:
            values["last_visit"] = datetime.now()

        stmt = (
            update(Client)
            .where(Client.id == client_id)
            .where(Client.balance + delta >= 0)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if session:
            return session.execute(stmt).rowcount == 1

        with self._get_session() as sess:
            updated = sess.execute(stmt).rowcount == 1
            if updated:
                sess.commit()
            return updated

    def set_balance(self, client_id: int, new_balance: int,
                    session: Optional[Session] = None) -> Optional[Client]:
        """管理员直接设置余额（绝对值）。"""
        return self.update_by_id(
            Client, client_id, session=session, balance=new_balance
        )

    def get_balance(self, client_id: int,
                    session: Optional[Session] = None) -> Optional[int]:
        """读取当前余额，顾客不存在返回 None。"""
        def _query(sess):
            row = sess.query(Client.balance).filter(Client.id == client_id).first()
            return row[0] if row else None

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def update_client(self, client_id: int,
                      session: Optional[Session] = None,
                      **fields: Any) -> Optional[Client]:
        """更新顾客资料（姓名、电话等）。"""
        return self.update_by_id(Client, client_id, session=session, **fields)

    def delete_client(self, client_id: int,
                      session: Optional[Session] = None) -> bool:
        """删除顾客。积分流水不级联删除。"""
        return self.delete_by_id(Client, client_id, session=session)


class EmployeeRepository(BaseCRUD):
    """员工 仓库。

    员工的 availability 由店主维护，预约时段计算只读使用。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_employee(self, establishment_id: int, name: str,
                        specialties: Optional[List[int]] = None,
                        availability: Optional[Dict[str, Any]] = None,
                        session: Optional[Session] = None,
                        **fields: Any) -> Employee:
        """创建员工。

        Args:
            establishment_id: 门店ID。
            name: 员工姓名。
            specialties: 可提供的服务ID列表（可选）。
            availability: 按星期索引的工作时间（可选）。
            session: 外部会话（可选）。

        Returns:
            Employee 对象。
        """
        return self.create(
            Employee, session=session,
            establishment_id=establishment_id, name=name,
            specialties=list(specialties or []),
            availability=availability or {}, **fields
        )

    def get(self, employee_id: int,
            session: Optional[Session] = None) -> Optional[Employee]:
        return self.get_by_id(Employee, employee_id, session=session)

    def list_by_establishment(self, establishment_id: int,
                              session: Optional[Session] = None
                              ) -> List[Employee]:
        return self.get_all(
            Employee, filters={"establishment_id": establishment_id},
            order_by=Employee.name, session=session
        )

    def list_active(self, establishment_id: int,
                    session: Optional[Session] = None) -> List[Employee]:
        """获取所有在职员工。"""
        return self.get_all(
            Employee,
            filters={"establishment_id": establishment_id, "is_active": True},
            order_by=Employee.name, session=session
        )

    def list_by_service(self, establishment_id: int, service_id: int,
                        session: Optional[Session] = None) -> List[Employee]:
        """获取可提供指定服务的在职员工。

        specialties 是 JSON 列表，不同数据库的 JSON 查询语法不一致，
        这里在内存中过滤。
        """
        employees = self.list_active(establishment_id, session=session)
        return [e for e in employees if service_id in (e.specialties or [])]

    def update_availability(self, employee_id: int,
                            availability: Dict[str, Any],
                            session: Optional[Session] = None
                            ) -> Optional[Employee]:
        """更新员工工作时间。"""
        return self.update_by_id(
            Employee, employee_id, session=session, availability=availability
        )

    def deactivate(self, employee_id: int,
                   session: Optional[Session] = None) -> Optional[Employee]:
        """停用员工。"""
        return self.update_by_id(
            Employee, employee_id, session=session, is_active=False
        )


class ServiceRepository(BaseCRUD):
    """服务 仓库。

    is_active 控制服务是否对顾客可见，以及是否参与员工筛选。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_service(self, establishment_id: int, name: str, duration: int,
                       price: Optional[float] = None,
                       description: Optional[str] = None,
                       session: Optional[Session] = None) -> Service:
        """创建服务。

        Args:
            establishment_id: 门店ID。
            name: 服务名称。
            duration: 时长（分钟）。
            price: 价格（可选）。
            description: 描述（可选）。

        Returns:
            Service 对象。
        """
        return self.create(
            Service, session=session,
            establishment_id=establishment_id, name=name, duration=duration,
            price=price, description=description
        )

    def get(self, service_id: int,
            session: Optional[Session] = None) -> Optional[Service]:
        return self.get_by_id(Service, service_id, session=session)

    def list_active(self, establishment_id: int,
                    session: Optional[Session] = None) -> List[Service]:
        return self.get_all(
            Service,
            filters={"establishment_id": establishment_id, "is_active": True},
            order_by=Service.name, session=session
        )

    def list_by_ids(self, service_ids: List[int],
                    session: Optional[Session] = None) -> List[Service]:
        if not service_ids:
            return []

        def _query(sess):
            return sess.query(Service).filter(Service.id.in_(service_ids)).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def update_service(self, service_id: int,
                       session: Optional[Session] = None,
                       **fields: Any) -> Optional[Service]:
        """更新服务（时长变化不影响已有预约）。"""
        return self.update_by_id(Service, service_id, session=session, **fields)


class RewardRepository(BaseCRUD):
    """奖励 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_reward(self, establishment_id: int, name: str, cost: int,
                      description: Optional[str] = None,
                      session: Optional[Session] = None) -> Reward:
        """创建奖励，默认启用、兑换次数为0。"""
        return self.create(
            Reward, session=session,
            establishment_id=establishment_id, name=name, cost=cost,
            description=description, is_active=True, redemption_count=0
        )

    def get(self, reward_id: int,
            session: Optional[Session] = None) -> Optional[Reward]:
        return self.get_by_id(Reward, reward_id, session=session)

    def list_active(self, establishment_id: int,
                    session: Optional[Session] = None) -> List[Reward]:
        """获取启用中的奖励，按所需积分从低到高排序。"""
        return self.get_all(
            Reward,
            filters={"establishment_id": establishment_id, "is_active": True},
            order_by=Reward.cost, session=session
        )

    def increment_redemption_count(self, reward_id: int,
                                   session: Optional[Session] = None) -> bool:
        """原子地将兑换次数加1。

        Returns:
            奖励是否存在并已更新。
        """
        stmt = (
            update(Reward)
            .where(Reward.id == reward_id)
            .values(redemption_count=Reward.redemption_count + 1)
            .execution_options(synchronize_session=False)
        )

        if session:
            return session.execute(stmt).rowcount == 1

        with self._get_session() as sess:
            updated = sess.execute(stmt).rowcount == 1
            sess.commit()
            return updated

    def update_reward(self, reward_id: int,
                      session: Optional[Session] = None,
                      **fields: Any) -> Optional[Reward]:
        """更新奖励（名称、成本、启用状态等）。"""
        return self.update_by_id(Reward, reward_id, session=session, **fields)
