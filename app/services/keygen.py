"""
app.services.keygen
~~~~~~~~~~~~~~~~~~~

房间密钥生成器 —— 生成短小、可分享、URL 安全的随机房间密钥。
"""
from __future__ import annotations

import secrets
import string

from app.core.settings import settings

ALPHABET: str = string.ascii_letters + string.digits


def generate_key(length: int | None = None) -> str:
    """生成一个固定长度的随机房间密钥。

    字母表为 62 个字符（大小写字母 + 数字），区分大小写。
    8 位密钥约有 2.18e14 种取值。

    Args:
        length: 密钥长度，默认取 ``settings.ROOM_KEY_LENGTH``。

    Returns:
        新生成的房间密钥。
    """
    size = length or settings.ROOM_KEY_LENGTH
    return "".join(secrets.choice(ALPHABET) for _ in range(size))
