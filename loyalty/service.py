"""积分与预约核心的统一入口。

LoyaltyService 把各组件绑定到同一个 DatabaseManager::

    db = DatabaseManager("sqlite:///data/loyalty.db")
    db.create_tables()
    core = LoyaltyService(db)

    slots = core.availability.get_slots_for_booking(employee_id, service_id, day)
    appointment_id = core.appointments.book(client_id, service_id, employee_id, start)
    core.ledger.earn(client_id, 10, acting_user_id="owner-1")
    result = core.redemptions.request(...)
"""
from typing import Any, Dict, Optional

from loguru import logger

from config.settings import settings
from database import DatabaseManager
from database.models import Client, Establishment

from .appointments import AppointmentManager
from .availability import AvailabilityCalculator
from .codes import format_client_code, generate_client_code, generate_unique_code
from .errors import NotFoundError, ValidationError, store_errors
from .ledger import PointsLedger
from .redemptions import RedemptionProtocol


class LoyaltyService:
    """积分与预约核心门面。

    Attributes:
        db: 数据库管理器。
        availability: 可预约时段计算器。
        appointments: 预约生命周期管理器。
        ledger: 积分账本。
        redemptions: 两阶段兑换协议。
    """

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db
        self.availability = AvailabilityCalculator(db)
        self.appointments = AppointmentManager(db)
        self.ledger = PointsLedger(db)
        self.redemptions = RedemptionProtocol(db, self.ledger)

    def establishment(self) -> Establishment:
        """当前部署的唯一门店。

        Raises:
            NotFoundError: 尚未初始化门店。
        """
        with store_errors("load establishment"):
            establishment = self.db.establishments.get_the_establishment()
        if establishment is None:
            raise NotFoundError("establishment", "default")
        return establishment

    def register_client(self, name: str, email: Optional[str] = None,
                        phone: Optional[str] = None,
                        user_id: Optional[str] = None,
                        establishment_id: Optional[int] = None) -> Client:
        """注册顾客并分配门店内唯一的顾客码。

        Raises:
            ValidationError: 姓名为空。
            CodeGenerationError: 无法生成唯一顾客码。
        """
        if not name or not name.strip():
            raise ValidationError("client name is required")
        if establishment_id is None:
            establishment_id = self.establishment().id

        with store_errors("register client"), self.db.get_session() as session:
            code = generate_unique_code(
                generate_client_code,
                lambda c: self.db.clients.code_exists(establishment_id, c, session=session),
                settings.code_max_attempts,
            )
            client = self.db.clients.create_client(
                establishment_id, name.strip(), code,
                email=email, phone=phone, user_id=user_id, session=session
            )
            session.commit()

        logger.info(f"Client {client.id} registered with code {code}")
        return client

    def get_client_info(self, client_id: int) -> Optional[Dict[str, Any]]:
        """查询顾客信息（含仍有效的待确认兑换单）。

        读取待确认兑换单时会顺带处理已过期的兑换单。

        Args:
            client_id: 顾客ID。

        Returns:
            顾客信息字典，不存在返回 None。
        """
        # 先处理过期兑换单，退回的积分才会反映在余额中
        pending = self.redemptions.list_pending_by_client(client_id)
        with store_errors("load client"):
            client = self.db.clients.get(client_id)
        if client is None:
            return None
        return {
            "id": client.id,
            "name": client.name,
            "email": client.email,
            "phone": client.phone,
            "code": client.code,
            "display_code": format_client_code(client.code),
            "balance": client.balance,
            "last_visit": client.last_visit,
            "pending_redemptions": [
                {
                    "id": r.id,
                    "code": r.code,
                    "reward_name": r.reward_name,
                    "reward_cost": r.reward_cost,
                    "expires_at": r.expires_at,
                }
                for r in pending
            ],
        }
