"""数据库管理器 —— 统一门面（Facade）。

DatabaseManager 是 database 模块的统一入口，组合了所有子仓库，
提供两套 API：

1. **子仓库访问**（细粒度）：
   通过 ``db.clients``、``db.appointments`` 等属性直接访问子仓库，
   返回 ORM 对象，供 loyalty 核心使用。

2. **便捷方法**（粗粒度）：
   提供扁平化的查询方法（如 ``get_employee_list()``），
   返回字典/基本类型，适合界面层和脚本调用。
"""
from typing import Optional, List, Dict, Any
from sqlalchemy.orm import Session

from .connection import DatabaseConnection
from .entity_repos import (
    EstablishmentRepository, ClientRepository, EmployeeRepository,
    ServiceRepository, RewardRepository
)
from .business_repos import (
    AppointmentRepository, TransactionRepository, RedemptionRepository
)


class DatabaseManager:
    """数据库管理器 —— 统一门面。

    Attributes:
        conn: 数据库连接管理器。
        establishments: 门店仓库。
        clients: 顾客仓库。
        employees: 员工仓库。
        services: 服务仓库。
        rewards: 奖励仓库。
        appointments: 预约仓库。
        transactions: 积分流水仓库。
        redemptions: 兑换单仓库。

    Example::

        db = DatabaseManager("sqlite:///data/loyalty.db")
        db.create_tables()

        establishment = db.establishments.get_the_establishment()
        employees = db.get_employee_list(establishment.id)
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """初始化数据库管理器。

        Args:
            database_url: 数据库连接URL。如果为None则使用settings配置。
        """
        # 基础设施层
        self.conn = DatabaseConnection(database_url)

        # 实体仓库
        self.establishments = EstablishmentRepository(self.conn)
        self.clients = ClientRepository(self.conn)
        self.employees = EmployeeRepository(self.conn)
        self.services = ServiceRepository(self.conn)
        self.rewards = RewardRepository(self.conn)

        # 业务记录仓库
        self.appointments = AppointmentRepository(self.conn)
        self.transactions = TransactionRepository(self.conn)
        self.redemptions = RedemptionRepository(self.conn)

    # ================================================================
    # 基础设施方法
    # ================================================================

    def create_tables(self) -> None:
        """创建所有数据库表（幂等操作）。"""
        self.conn.create_tables()

    def get_session(self) -> Session:
        """获取数据库会话。"""
        return self.conn.get_session()

    @property
    def database_url(self) -> str:
        """数据库连接URL。"""
        return self.conn.database_url

    @property
    def engine(self):
        """SQLAlchemy 引擎对象。"""
        return self.conn.engine

    def close(self) -> None:
        """关闭数据库连接，释放所有资源。"""
        self.conn.close()

    # ================================================================
    # 便捷查询方法
    # ================================================================

    def get_employee_list(self, establishment_id: int,
                          active_only: bool = True) -> List[Dict[str, Any]]:
        """获取员工列表。

        Args:
            establishment_id: 门店ID。
            active_only: 是否只返回在职员工，默认 True。

        Returns:
            员工信息字典列表。
        """
        if active_only:
            employees = self.employees.list_active(establishment_id)
        else:
            employees = self.employees.list_by_establishment(establishment_id)

        return [
            {
                "id": e.id,
                "name": e.name,
                "specialties": list(e.specialties or []),
                "working_days": sorted((e.availability or {}).keys()),
                "is_active": e.is_active,
            }
            for e in employees
        ]
