"""预约生命周期管理。

状态机::

    pending ──> confirmed ──> completed
       │            │
       └────────────┴──> cancelled

completed 与 cancelled 为终态。除顾客取消自己的预约外，
所有状态迁移由店主端发起。预约与积分互不影响，完成预约不会自动发放积分。
"""
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Dict, Iterator, List, Optional

from loguru import logger

from database import DatabaseManager
from database.business_repos import day_bounds
from database.models import (
    Appointment,
    APPOINTMENT_PENDING, APPOINTMENT_CONFIRMED,
    APPOINTMENT_COMPLETED, APPOINTMENT_CANCELLED,
)

from .errors import (
    NotFoundError, StateConflictError, ValidationError, store_errors
)

APPOINTMENT_STATUSES = (
    APPOINTMENT_PENDING, APPOINTMENT_CONFIRMED,
    APPOINTMENT_COMPLETED, APPOINTMENT_CANCELLED,
)

ALLOWED_TRANSITIONS = {
    APPOINTMENT_PENDING: {APPOINTMENT_CONFIRMED, APPOINTMENT_CANCELLED},
    APPOINTMENT_CONFIRMED: {APPOINTMENT_COMPLETED, APPOINTMENT_CANCELLED},
    APPOINTMENT_COMPLETED: set(),
    APPOINTMENT_CANCELLED: set(),
}

# 顾客只能取消尚未完成的预约
CLIENT_CANCELLABLE = {APPOINTMENT_PENDING, APPOINTMENT_CONFIRMED}


class _KeyedLocks:
    """按键（员工ID）分配的进程内互斥锁。"""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, key: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks[key]
        with lock:
            yield


class AppointmentManager:
    """预约生命周期管理器。

    创建预约时在同一事务内重新检查该员工的时段冲突，
    并按员工串行化，避免两个顾客同时约到同一时段。

    Attributes:
        db: 数据库管理器。
    """

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db
        self._employee_locks = _KeyedLocks()

    def create(self, client_id: int, service_id: int, employee_id: int,
               date: datetime, duration: int, notes: Optional[str] = None,
               establishment_id: Optional[int] = None) -> int:
        """创建预约。

        Args:
            client_id: 顾客ID。
            service_id: 服务ID。
            employee_id: 员工ID。
            date: 开始时间；带时区的时间先转换为本地时间。
            duration: 时长（分钟），为预约当时的服务时长，原样保存。
            notes: 备注（可选）。
            establishment_id: 门店ID，省略时取员工所属门店。

        Returns:
            新预约的ID。

        Raises:
            ValidationError: 必填字段缺失或时长不是正整数。
            NotFoundError: 员工不存在（未提供 establishment_id 时）。
            StateConflictError: 时段与该员工的有效预约重叠。
        """
        missing = [
            name for name, value in (
                ("client_id", client_id), ("service_id", service_id),
                ("employee_id", employee_id), ("date", date),
            )
            if value is None or value == ""
        ]
        if missing:
            raise ValidationError(f"missing required fields: {', '.join(missing)}")
        if not isinstance(date, datetime):
            raise ValidationError("date must be a datetime")
        if date.tzinfo is not None:
            # 存储使用本地无时区时间
            date = date.astimezone().replace(tzinfo=None)
        if not isinstance(duration, int) or duration <= 0:
            raise ValidationError("duration must be a positive number of minutes")

        if establishment_id is None:
            with store_errors("load employee"):
                employee = self.db.employees.get(employee_id)
            if employee is None:
                raise NotFoundError("employee", employee_id)
            establishment_id = employee.establishment_id

        with self._employee_locks.hold(employee_id):
            with store_errors("create appointment"), self.db.get_session() as session:
                conflicts = self.db.appointments.find_overlapping(
                    employee_id, date, duration, session=session
                )
                if conflicts:
                    logger.warning(
                        f"Slot {date:%Y-%m-%d %H:%M} for employee {employee_id} "
                        f"overlaps appointment {conflicts[0].id}"
                    )
                    raise StateConflictError(
                        f"the {date:%H:%M} slot is no longer available",
                        current_state=conflicts[0].status,
                    )

                appointment = self.db.appointments.create_appointment(
                    establishment_id, client_id, service_id, employee_id,
                    date, duration, notes, session=session
                )
                session.commit()

        logger.info(
            f"Appointment {appointment.id} booked: client {client_id}, "
            f"employee {employee_id}, {date:%Y-%m-%d %H:%M} ({duration} min)"
        )
        return appointment.id

    def book(self, client_id: int, service_id: int, employee_id: int,
             start: datetime, notes: Optional[str] = None) -> int:
        """按服务当前时长创建预约。

        Raises:
            NotFoundError: 服务或员工不存在。
            ValidationError: 服务已停用、员工已停用或员工不提供该服务。
        """
        with store_errors("load booking context"):
            service = self.db.services.get(service_id)
            employee = self.db.employees.get(employee_id)

        if service is None:
            raise NotFoundError("service", service_id)
        if employee is None:
            raise NotFoundError("employee", employee_id)
        if not service.is_active:
            raise ValidationError(f"service {service.name} is not available")
        if not employee.is_active:
            raise ValidationError(f"employee {employee.name} is not available")
        if employee.specialties and service_id not in employee.specialties:
            raise ValidationError(f"{employee.name} does not offer {service.name}")

        return self.create(
            client_id, service_id, employee_id, start, service.duration,
            notes=notes, establishment_id=employee.establishment_id
        )

    def get(self, appointment_id: int) -> Appointment:
        """按ID获取预约。

        Raises:
            NotFoundError: 预约不存在。
        """
        with store_errors("load appointment"):
            appointment = self.db.appointments.get(appointment_id)
        if appointment is None:
            raise NotFoundError("appointment", appointment_id)
        return appointment

    def set_status(self, appointment_id: int, new_status: str) -> Appointment:
        """迁移预约状态。

        Raises:
            ValidationError: 未知状态。
            NotFoundError: 预约不存在。
            StateConflictError: 当前状态不允许迁移到目标状态。
        """
        if new_status not in APPOINTMENT_STATUSES:
            raise ValidationError(f"unknown appointment status: {new_status}")

        appointment = self.get(appointment_id)
        current = appointment.status
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise StateConflictError(
                f"appointment is already {current}, cannot change to {new_status}",
                current_state=current,
            )

        with store_errors("update appointment status"):
            updated = self.db.appointments.set_status(appointment_id, new_status)

        logger.info(f"Appointment {appointment_id}: {current} -> {new_status}")
        return updated

    def confirm(self, appointment_id: int) -> Appointment:
        return self.set_status(appointment_id, APPOINTMENT_CONFIRMED)

    def complete(self, appointment_id: int) -> Appointment:
        return self.set_status(appointment_id, APPOINTMENT_COMPLETED)

    def cancel(self, appointment_id: int) -> Appointment:
        return self.set_status(appointment_id, APPOINTMENT_CANCELLED)

    def cancel_by_client(self, appointment_id: int, client_id: int) -> Appointment:
        """顾客取消自己的预约（仅 pending/confirmed）。

        Raises:
            NotFoundError: 预约不存在或不属于该顾客。
            StateConflictError: 预约已完成或已取消。
        """
        appointment = self.get(appointment_id)
        if appointment.client_id != client_id:
            raise NotFoundError("appointment", appointment_id)
        if appointment.status not in CLIENT_CANCELLABLE:
            raise StateConflictError(
                f"appointment is already {appointment.status}",
                current_state=appointment.status,
            )
        return self.set_status(appointment_id, APPOINTMENT_CANCELLED)

    # ================================================================
    # 查询
    # ================================================================

    def list_for_range(self, establishment_id: int, start: datetime,
                       end: datetime) -> List[Appointment]:
        """门店在时间范围内的预约（日历视图）。"""
        with store_errors("list appointments"):
            return self.db.appointments.list_by_establishment(establishment_id, start, end)

    def list_for_month(self, establishment_id: int, year: int,
                       month: int) -> List[Appointment]:
        """门店某月的全部预约（月视图）。"""
        first_day = datetime(year, month, 1)
        if month == 12:
            next_month = datetime(year + 1, 1, 1)
        else:
            next_month = datetime(year, month + 1, 1)
        return self.list_for_range(
            establishment_id, first_day, next_month - timedelta(microseconds=1)
        )

    def list_for_employee_day(self, employee_id: int,
                              target_date: date) -> List[Appointment]:
        with store_errors("list employee appointments"):
            return self.db.appointments.list_by_employee(employee_id, target_date)

    def list_for_client(self, client_id: int, upcoming_only: bool = False,
                        now: Optional[datetime] = None) -> List[Appointment]:
        """顾客的预约历史。

        Args:
            client_id: 顾客ID。
            upcoming_only: 只返回未来且未结束（pending/confirmed）的预约，按时间正序。
            now: 当前时间（默认 ``datetime.now()``）。
        """
        with store_errors("list client appointments"):
            appointments = self.db.appointments.list_by_client(client_id)
        if not upcoming_only:
            return appointments

        now = now or datetime.now()
        upcoming = [
            a for a in appointments
            if a.date >= now and a.status in CLIENT_CANCELLABLE
        ]
        return sorted(upcoming, key=lambda a: a.date)

    def day_stats(self, establishment_id: int, target_date: date) -> Dict[str, int]:
        """门店某日的预约统计。

        Returns:
            字典，包含 total、pending、confirmed、completed。
        """
        start, end = day_bounds(target_date)
        appointments = self.list_for_range(establishment_id, start, end)
        return {
            "total": len(appointments),
            "pending": sum(1 for a in appointments if a.status == APPOINTMENT_PENDING),
            "confirmed": sum(1 for a in appointments if a.status == APPOINTMENT_CONFIRMED),
            "completed": sum(1 for a in appointments if a.status == APPOINTMENT_COMPLETED),
        }
