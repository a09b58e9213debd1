"""顾客码与兑换码的生成和规范化。

字母表去掉了容易混淆的字符（0/O、1/I/L），共31个字符。
- 顾客码：6位随机字符，展示时在第3位后插入连字符（ABC-123）
- 兑换码：``CJ-`` 前缀 + 6位随机字符（CJ-ABC123）
"""
import secrets
from typing import Callable

from loguru import logger

from .errors import CodeGenerationError

CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
REDEMPTION_PREFIX = "CJ-"


def _random_chars(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_client_code() -> str:
    """生成6位顾客码。"""
    return _random_chars()


def generate_redemption_code() -> str:
    """生成兑换码（CJ-XXXXXX）。"""
    return REDEMPTION_PREFIX + _random_chars()


def format_client_code(code: str) -> str:
    """格式化顾客码用于展示。

    Args:
        code: 原始6位顾客码。

    Returns:
        ``ABC-123`` 形式；空值返回 ``---``；长度不是6位时原样返回。
    """
    if not code:
        return "---"
    if len(code) != CODE_LENGTH:
        return code
    return f"{code[:3]}-{code[3:]}"


def normalize_client_code(code: str) -> str:
    """去掉连字符和空白并转为大写，用于按顾客码查询。"""
    return code.replace("-", "").strip().upper()


def normalize_redemption_code(code: str) -> str:
    """去掉首尾空白并转为大写，保留 ``CJ-`` 前缀。"""
    return code.strip().upper()


def generate_unique_code(generator: Callable[[], str],
                         exists: Callable[[str], bool],
                         max_attempts: int = 10) -> str:
    """生成在当前门店内唯一的编码。

    Args:
        generator: 编码生成函数。
        exists: 判断编码是否已被占用的函数。
        max_attempts: 最大尝试次数。

    Returns:
        未被占用的编码。

    Raises:
        CodeGenerationError: 所有尝试均发生冲突。
    """
    for attempt in range(1, max_attempts + 1):
        code = generator()
        if not exists(code):
            return code
        logger.debug(f"Code collision on attempt {attempt}: {code}")

    logger.error(f"Could not generate a unique code after {max_attempts} attempts")
    raise CodeGenerationError(
        f"could not generate a unique code after {max_attempts} attempts"
    )
