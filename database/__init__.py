"""数据库模块 —— 门店、顾客、员工、服务、奖励、预约、积分流水与兑换单的存取层。"""
from .manager import DatabaseManager
from .connection import DatabaseConnection

__all__ = ["DatabaseManager", "DatabaseConnection"]
