"""全局配置管理

所有用户可配置项均通过 .env 文件设置，运行时自动加载到此处。

使用方式：
    1. 手动创建 .env 文件，例如 ``DATABASE_URL=sqlite:///data/loyalty.db``
    2. 或直接通过环境变量覆盖（不区分大小写）
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置 - 所有字段均可通过 .env 或环境变量覆盖"""

    # ========== 数据库 ==========
    database_url: str = "sqlite:///data/loyalty.db"

    # ========== 积分与兑换 ==========
    redemption_ttl_hours: int = 24
    code_max_attempts: int = 10
    expiry_sweep_minutes: int = 15

    # ========== 门店初始化 ==========
    establishment_name: str = "Mi Barbería"
    currency_name: str = "Puntos"
    currency_symbol: str = "pts"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# 全局配置实例
settings = Settings()
