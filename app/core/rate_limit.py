"""
app.core.rate_limit
~~~~~~~~~~~~~~~~~~~

REST 接口与 WebSocket 信令的限流配置。
"""
from __future__ import annotations

import threading
import time
from collections import Counter, defaultdict, deque

from limits.storage.base import Storage
from limits.storage.memory import MemoryStorage
from slowapi import Limiter
from slowapi.util import get_remote_address


class SafeMemoryStorage(MemoryStorage):
    """
    延迟启动 timer 线程的内存存储后端。
    解决在 Windows 系统中 uvicorn --reload 模式下由于 multiprocessing.spawn 阶段启动线程导致的 hang/死锁问题。
    """
    STORAGE_SCHEME = ["safe-memory"]

    def __init__(self, uri: str | None = None, wrap_exceptions: bool = False, **kwargs: str):
        # 初始化需要的字典，但不在这里调用 self.timer.start()
        self.storage = Counter()
        self.locks = defaultdict(threading.RLock)
        self.expirations = {}
        self.events = {}
        self.timer = threading.Timer(0.01, self._MemoryStorage__expire_events)
        Storage.__init__(self, uri, wrap_exceptions=wrap_exceptions, **kwargs)


# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="safe-memory://",
)


# --------- WebSocket 限流器 ---------
class WebSocketRateLimiter:
    """基于内存的滑动窗口 WebSocket 信令限流器。

    候选地址通常成批到达，所以这里按窗口计数，而不是要求两条消息之间
    有固定间隔：``interval_seconds`` 内最多放行 ``max_messages`` 条。
    """

    def __init__(self, max_messages: int = 50, interval_seconds: float = 1.0) -> None:
        self.max_messages = max_messages
        self.interval_seconds = interval_seconds
        self._history: dict[str, deque[float]] = {}

    def is_allowed(self, client_id: str) -> bool:
        """检查客户端是否允许发送消息。

        Args:
            client_id: 客户端唯一标识（连接的 party_id）。

        Returns:
            是否允许发送。如果允许，则同时记录本次发送时间。
        """
        now = time.monotonic()
        history = self._history.setdefault(client_id, deque())
        while history and now - history[0] >= self.interval_seconds:
            history.popleft()

        if len(history) < self.max_messages:
            history.append(now)
            return True
        return False

    def remove_client(self, client_id: str) -> None:
        """清理断开连接的客户端记录。"""
        self._history.pop(client_id, None)
