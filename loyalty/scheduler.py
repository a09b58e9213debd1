"""定时任务调度器

通用的任务调度框架，具体任务通过回调注入。
目前用于定期清理过期兑换单：兑换单的过期主要在读取/确认/取消时顺带处理，
定时清理让"待确认兑换"的统计在无人访问时也保持准确。
"""
from typing import Any, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from config.settings import settings

from .redemptions import RedemptionProtocol

EXPIRY_SWEEP_JOB_ID = "redemption_expiry_sweep"


class Scheduler:
    """定时任务调度器

    需要在运行中的事件循环内调用 ``start``。
    """

    def __init__(self):
        self.scheduler = AsyncIOScheduler()

    def add_interval_task(
        self,
        task_func: Callable[[], Any],
        minutes: int,
        task_id: str,
        task_name: str
    ):
        """添加固定间隔的定时任务

        Args:
            task_func: 任务函数。同步函数由调度器的线程池执行，不阻塞事件循环
            minutes: 间隔分钟数
            task_id: 任务ID
            task_name: 任务名称
        """
        self.scheduler.add_job(
            task_func,
            trigger=IntervalTrigger(minutes=minutes),
            id=task_id,
            name=task_name,
            replace_existing=True
        )
        logger.info(f"Added interval task '{task_name}' every {minutes} min")

    def start(self):
        """启动调度器"""
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self):
        """停止调度器"""
        self.scheduler.shutdown()
        logger.info("Scheduler stopped")

    def remove_job(self, job_id: str):
        """移除任务

        Args:
            job_id: 任务ID
        """
        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Job {job_id} removed")
        except JobLookupError:
            logger.warning(f"Job {job_id} not found, nothing to remove")


def make_expiry_sweep(protocol: RedemptionProtocol) -> Callable[[], int]:
    """构造过期兑换单清理任务。

    返回同步函数：数据库操作是阻塞的，交给调度器的线程池执行。
    """
    def sweep() -> int:
        return protocol.expire_stale()

    return sweep


def register_expiry_sweep(scheduler: Scheduler, protocol: RedemptionProtocol,
                          minutes: int = 0) -> None:
    """注册过期兑换单定时清理任务。

    Args:
        scheduler: 调度器。
        protocol: 兑换单协议。
        minutes: 间隔分钟数，默认取 settings.expiry_sweep_minutes。
    """
    scheduler.add_interval_task(
        make_expiry_sweep(protocol),
        minutes=minutes or settings.expiry_sweep_minutes,
        task_id=EXPIRY_SWEEP_JOB_ID,
        task_name="redemption expiry sweep"
    )
