"""初始化数据库"""
import sys
import os

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import DatabaseManager
from config.settings import settings
from loguru import logger

# 默认营业时间：周一至周六 09:00-18:00，周日休息
DEFAULT_HOURS = {
    day: {"open": "09:00", "close": "18:00", "closed": False}
    for day in ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday")
}
DEFAULT_HOURS["sunday"] = {"open": "09:00", "close": "18:00", "closed": True}


def init_database(database_url=None):
    """创建所有表，并在没有门店时创建唯一的门店"""
    logger.info("Initializing database...")

    db = DatabaseManager(database_url)

    logger.info("Creating tables...")
    db.create_tables()

    establishment = db.establishments.get_the_establishment()
    if establishment is None:
        establishment = db.establishments.create_establishment(
            settings.establishment_name,
            hours=DEFAULT_HOURS,
            currency_name=settings.currency_name,
            currency_symbol=settings.currency_symbol,
        )
        logger.info(f"Created establishment: {establishment.name}")
    else:
        logger.info(f"Establishment already exists: {establishment.name}")

    logger.info("Database initialization completed!")
    return db


if __name__ == "__main__":
    init_database()
