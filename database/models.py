"""SQLAlchemy ORM 模型定义。

本模块定义了所有数据库表的ORM模型，包括：
- 门店、员工、服务、顾客等基础实体
- 预约记录
- 奖励、积分流水、兑换单（积分账本相关数据）

时间字段均为本地时间（naive datetime），预约按本地自然日比较。
"""
from typing import Dict, Any, List, Optional
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime,
    DECIMAL, ForeignKey, JSON, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime

# SQLAlchemy declarative base，所有模型都继承自此类
# 设置 __allow_unmapped__ = True 以兼容 SQLAlchemy 2.0 的类型注解要求
Base = declarative_base()

Base.__allow_unmapped__ = True


# 预约状态
APPOINTMENT_PENDING = "pending"
APPOINTMENT_CONFIRMED = "confirmed"
APPOINTMENT_COMPLETED = "completed"
APPOINTMENT_CANCELLED = "cancelled"

# 兑换单状态
REDEMPTION_PENDING = "pending"
REDEMPTION_CONFIRMED = "confirmed"
REDEMPTION_CANCELLED = "cancelled"
REDEMPTION_EXPIRED = "expired"

# 积分流水类型
TRANSACTION_EARNED = "earned"
TRANSACTION_REDEEMED = "redeemed"


class Establishment(Base):
    """门店表模型。

    部署中只存在一个门店（单租户），但所有业务数据仍通过
    establishment_id 显式关联。

    Attributes:
        id: 主键，自增整数。
        owner_id: 店主的用户标识，可选。
        name: 门店名称，必填。
        hours: JSON营业时间，按星期名称索引，
            如 ``{"monday": {"open": "09:00", "close": "18:00", "closed": false}}``。
        currency_name: 积分名称（如"Puntos"）。
        currency_symbol: 积分符号。
    """
    __tablename__ = "establishments"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    owner_id: Optional[str] = Column(String(100))
    name: str = Column(String(100), nullable=False)
    phone: Optional[str] = Column(String(30))
    address: Optional[str] = Column(String(200))
    description: Optional[str] = Column(Text)
    hours: Dict[str, Any] = Column(JSON, default={})
    currency_name: str = Column(String(30), default="Puntos")
    currency_symbol: str = Column(String(10), default="pts")
    created_at: datetime = Column(DateTime, default=datetime.now)
    updated_at: datetime = Column(DateTime, default=datetime.now, onupdate=datetime.now)


class Client(Base):
    """顾客表模型。

    balance 为积分余额的唯一事实来源，只允许通过积分账本或管理员
    直接编辑修改，数据库层通过 CHECK 约束保证非负。

    Attributes:
        code: 6位顾客码，门店内唯一，字母表不含易混淆字符 0/O/1/I/L。
        balance: 积分余额，非负整数，默认0。
        last_visit: 最近一次到店（获得积分）时间。
    """
    __tablename__ = "clients"
    __table_args__ = (
        UniqueConstraint("establishment_id", "code", name="uq_client_code"),
        CheckConstraint("balance >= 0", name="ck_client_balance_non_negative"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    establishment_id: int = Column(Integer, ForeignKey("establishments.id"), nullable=False)
    user_id: Optional[str] = Column(String(100))
    name: str = Column(String(100), nullable=False)
    email: Optional[str] = Column(String(150))
    phone: Optional[str] = Column(String(30))
    code: str = Column(String(6), nullable=False)
    balance: int = Column(Integer, nullable=False, default=0)
    created_at: datetime = Column(DateTime, default=datetime.now)
    last_visit: Optional[datetime] = Column(DateTime)

    appointments: List["Appointment"] = relationship("Appointment", back_populates="client")


class Employee(Base):
    """员工表模型。

    Attributes:
        specialties: JSON列表，员工可提供的服务ID。
        availability: JSON工作时间，按星期名称索引，
            如 ``{"monday": {"start": "09:00", "end": "18:00", "break_times": []}}``。
            缺少某天时回退到门店营业时间。
        is_active: 是否在职。
    """
    __tablename__ = "employees"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    establishment_id: int = Column(Integer, ForeignKey("establishments.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    phone: Optional[str] = Column(String(30))
    email: Optional[str] = Column(String(150))
    specialties: List[int] = Column(JSON, default=[])
    availability: Dict[str, Any] = Column(JSON, default={})
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=datetime.now)

    appointments: List["Appointment"] = relationship("Appointment", back_populates="employee")


class Service(Base):
    """服务表模型。duration 以分钟计，必须大于0。"""
    __tablename__ = "services"
    __table_args__ = (
        CheckConstraint("duration > 0", name="ck_service_duration_positive"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    establishment_id: int = Column(Integer, ForeignKey("establishments.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    description: Optional[str] = Column(Text)
    duration: int = Column(Integer, nullable=False)
    price: Optional[float] = Column(DECIMAL(10, 2))
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=datetime.now)

    appointments: List["Appointment"] = relationship("Appointment", back_populates="service")


class Appointment(Base):
    """预约表模型。

    状态机：pending -> confirmed -> completed；pending/confirmed -> cancelled。
    completed 与 cancelled 为终态。

    Attributes:
        date: 预约开始时间（本地时间）。
        duration: 预约时长（分钟），创建时从服务复制，之后服务时长变化不影响已有预约。
        status: 预约状态。
    """
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_employee_date", "employee_id", "date"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    establishment_id: int = Column(Integer, ForeignKey("establishments.id"), nullable=False)
    client_id: int = Column(Integer, ForeignKey("clients.id"), nullable=False)
    service_id: int = Column(Integer, ForeignKey("services.id"), nullable=False)
    employee_id: int = Column(Integer, ForeignKey("employees.id"), nullable=False)
    date: datetime = Column(DateTime, nullable=False)
    duration: int = Column(Integer, nullable=False)
    status: str = Column(String(20), nullable=False, default=APPOINTMENT_PENDING)
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=datetime.now)
    updated_at: datetime = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    client: "Client" = relationship("Client", back_populates="appointments")
    service: "Service" = relationship("Service", back_populates="appointments")
    employee: "Employee" = relationship("Employee", back_populates="appointments")


class Reward(Base):
    """奖励表模型。

    Attributes:
        cost: 兑换所需积分，必须大于0。
        redemption_count: 已兑换次数，只增不减（原子自增）。
    """
    __tablename__ = "rewards"
    __table_args__ = (
        CheckConstraint("cost > 0", name="ck_reward_cost_positive"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    establishment_id: int = Column(Integer, ForeignKey("establishments.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    description: Optional[str] = Column(Text)
    cost: int = Column(Integer, nullable=False)
    is_active: bool = Column(Boolean, default=True)
    redemption_count: int = Column(Integer, nullable=False, default=0)
    created_at: datetime = Column(DateTime, default=datetime.now)


class Transaction(Base):
    """积分流水表模型（审计账本）。

    只追加，不修改、不删除。client_id 不设级联删除，
    顾客被删除后历史流水仍然保留。

    Attributes:
        type: 流水类型，earned（获得）/ redeemed（兑换）。
        amount: 积分数量，正整数。
        created_by: 操作人（店主/员工）标识。
    """
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    establishment_id: int = Column(Integer, nullable=False)
    client_id: int = Column(Integer, nullable=False, index=True)
    type: str = Column(String(20), nullable=False)
    amount: int = Column(Integer, nullable=False)
    reward_id: Optional[int] = Column(Integer)
    appointment_id: Optional[int] = Column(Integer)
    notes: Optional[str] = Column(Text)
    created_by: str = Column(String(100), nullable=False)
    created_at: datetime = Column(DateTime, default=datetime.now, index=True)


class Redemption(Base):
    """兑换单表模型（两阶段兑换的待确认记录）。

    client_name、reward_name、reward_cost 为创建时的快照，
    之后奖励被修改也以快照为准。

    pending 状态下奖励积分已经从顾客余额中预扣。
    confirmed / cancelled / expired 均为终态。
    """
    __tablename__ = "redemptions"
    __table_args__ = (
        UniqueConstraint("establishment_id", "code", name="uq_redemption_code"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    code: str = Column(String(9), nullable=False)
    establishment_id: int = Column(Integer, ForeignKey("establishments.id"), nullable=False)
    client_id: int = Column(Integer, nullable=False, index=True)
    client_name: str = Column(String(100), nullable=False)
    reward_id: int = Column(Integer, nullable=False)
    reward_name: str = Column(String(100), nullable=False)
    reward_cost: int = Column(Integer, nullable=False)
    status: str = Column(String(20), nullable=False, default=REDEMPTION_PENDING)
    created_at: datetime = Column(DateTime, default=datetime.now)
    expires_at: datetime = Column(DateTime, nullable=False)
    confirmed_at: Optional[datetime] = Column(DateTime)
    confirmed_by: Optional[str] = Column(String(100))
    cancelled_at: Optional[datetime] = Column(DateTime)
