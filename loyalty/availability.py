"""可预约时段计算。

给定员工、服务时长和目标日期，计算当天可预约的开始时间列表：

1. 确定当天的工作时间：员工当天的配置优先；没有则回退到门店营业时间
   （门店当天标记为 closed 时不回退）；都没有则当天不接受预约。
2. 从工作开始时间起每隔30分钟生成候选时段，结束时间不得超过下班时间。
3. 候选时段与当天任一未取消预约（或员工休息时间）以半开区间相交即排除，
   首尾相接不算冲突。
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from database import DatabaseManager
from database.models import APPOINTMENT_CANCELLED

from .errors import NotFoundError, ValidationError, store_errors

# 可预约时段的固定网格步长（分钟），与服务时长无关
SLOT_STEP_MINUTES = 30

# 按 date.weekday() 的顺序
WEEKDAYS = [
    "monday", "tuesday", "wednesday", "thursday",
    "friday", "saturday", "sunday",
]


def parse_hhmm(value: str) -> int:
    """把 ``HH:MM`` 转换为当天的分钟数。"""
    try:
        hour, minute = value.split(":")
        return int(hour) * 60 + int(minute)
    except (AttributeError, ValueError):
        raise ValidationError(f"invalid time value: {value!r}")


def format_hhmm(minutes: int) -> str:
    """把当天的分钟数格式化为 ``HH:MM``。"""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def weekday_name(target_date: date) -> str:
    return WEEKDAYS[target_date.weekday()]


@dataclass(frozen=True)
class WorkingWindow:
    """某一天的工作时间窗口（以当天分钟数表示）。

    Attributes:
        start: 上班时间。
        end: 下班时间。
        breaks: 休息时段列表，每项为 ``(start, end)``。
    """
    start: int
    end: int
    breaks: Tuple[Tuple[int, int], ...] = field(default_factory=tuple)

    @classmethod
    def from_employee_day(cls, day: Dict[str, Any]) -> "WorkingWindow":
        breaks = day.get("break_times") or day.get("breakTimes") or []
        return cls(
            start=parse_hhmm(day["start"]),
            end=parse_hhmm(day["end"]),
            breaks=tuple(
                (parse_hhmm(b["start"]), parse_hhmm(b["end"])) for b in breaks
            ),
        )


def resolve_working_window(weekday: str,
                           employee_availability: Optional[Dict[str, Any]],
                           establishment_hours: Optional[Dict[str, Any]] = None
                           ) -> Optional[WorkingWindow]:
    """按优先级确定某天的工作时间。

    优先级：员工当天配置 > 门店当天营业时间（未标记 closed）> 不工作。

    Args:
        weekday: 星期名称（小写英文，如 ``monday``）。
        employee_availability: 员工工作时间配置。
        establishment_hours: 门店营业时间配置（可选）。

    Returns:
        WorkingWindow，当天不工作时返回 None。
    """
    employee_day = (employee_availability or {}).get(weekday)
    if employee_day:
        return WorkingWindow.from_employee_day(employee_day)

    establishment_day = (establishment_hours or {}).get(weekday)
    if establishment_day and not establishment_day.get("closed"):
        return WorkingWindow(
            start=parse_hhmm(establishment_day["open"]),
            end=parse_hhmm(establishment_day["close"]),
        )

    return None


def _overlaps(start_a: datetime, end_a: datetime,
              start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and end_a > start_b


def compute_free_slots(window: WorkingWindow, service_duration: int,
                       target_date: date, appointments: Iterable[Any]) -> List[str]:
    """在给定工作窗口内计算空闲时段。

    Args:
        window: 当天工作时间。
        service_duration: 服务时长（分钟）。
        target_date: 目标日期。
        appointments: 当天预约，需具有 date、duration、status 属性；
            已取消的预约自动忽略。

    Returns:
        按时间顺序排列的 ``HH:MM`` 列表。
    """
    day_start = datetime.combine(target_date, time.min)
    busy = [
        (apt.date, apt.date + timedelta(minutes=apt.duration))
        for apt in appointments
        if apt.status != APPOINTMENT_CANCELLED
    ]
    busy.extend(
        (day_start + timedelta(minutes=b_start), day_start + timedelta(minutes=b_end))
        for b_start, b_end in window.breaks
    )

    slots = []
    minute = window.start
    while minute + service_duration <= window.end:
        slot_start = day_start + timedelta(minutes=minute)
        slot_end = slot_start + timedelta(minutes=service_duration)
        if not any(_overlaps(slot_start, slot_end, b_start, b_end) for b_start, b_end in busy):
            slots.append(format_hhmm(minute))
        minute += SLOT_STEP_MINUTES
    return slots


class AvailabilityCalculator:
    """可预约时段计算器。

    只读：查询员工当天预约后调用 ``compute_free_slots``，不写入任何数据。
    """

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    def compute_available_slots(self, employee_id: int,
                                employee_availability: Optional[Dict[str, Any]],
                                service_duration: int, target_date: date,
                                establishment_hours: Optional[Dict[str, Any]] = None
                                ) -> List[str]:
        """计算员工某天可预约的开始时间。

        Args:
            employee_id: 员工ID。
            employee_availability: 员工工作时间配置。
            service_duration: 服务时长（分钟），必须大于0。
            target_date: 目标日期（datetime 时只取日期部分）。
            establishment_hours: 门店营业时间，员工当天未配置时作为回退。

        Returns:
            ``HH:MM`` 列表；空列表表示已约满或当天不工作。

        Raises:
            ValidationError: 服务时长不是正整数。
        """
        if not isinstance(service_duration, int) or service_duration <= 0:
            raise ValidationError("service duration must be a positive number of minutes")
        if isinstance(target_date, datetime):
            target_date = target_date.date()

        window = resolve_working_window(
            weekday_name(target_date), employee_availability, establishment_hours
        )
        if window is None:
            logger.debug(f"Employee {employee_id} does not work on {target_date}")
            return []

        with store_errors("list employee appointments"):
            # 包含前一天开始、跨过午夜的预约
            appointments = self.db.appointments.find_overlapping(
                employee_id, datetime.combine(target_date, time.min), 24 * 60
            )

        return compute_free_slots(
            window, service_duration, target_date, appointments
        )

    def get_slots_for_booking(self, employee_id: int, service_id: int,
                              target_date: date) -> List[str]:
        """从存储中读取员工、服务和门店配置后计算可预约时段。

        Raises:
            NotFoundError: 员工或服务不存在。
        """
        with store_errors("load booking context"):
            employee = self.db.employees.get(employee_id)
            service = self.db.services.get(service_id)
            establishment = (
                self.db.establishments.get(employee.establishment_id)
                if employee else None
            )

        if employee is None:
            raise NotFoundError("employee", employee_id)
        if service is None:
            raise NotFoundError("service", service_id)

        return self.compute_available_slots(
            employee.id, employee.availability, service.duration, target_date,
            establishment.hours if establishment else None
        )
