"""
弹性机制

重连与失败后等待使用的指数退避。
"""

import asyncio
import contextlib
import random
from dataclasses import dataclass


@dataclass
class BackoffConfig:
    """退避配置"""
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1
    max_retries: int = -1  # -1 表示无限


class ExponentialBackoff:
    """指数退避"""

    def __init__(self, config: BackoffConfig | None = None):
        self._config = config or BackoffConfig()
        self._current_delay = self._config.base_delay
        self._retry_count = 0

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def current_delay(self) -> float:
        return self._current_delay

    def reset(self) -> None:
        self._current_delay = self._config.base_delay
        self._retry_count = 0

    def should_retry(self) -> bool:
        if self._config.max_retries < 0:
            return True
        return self._retry_count < self._config.max_retries

    def next_delay(self) -> float:
        """计算本次等待时间并推进退避状态"""
        jitter = 1.0 + (random.random() * 2 - 1) * self._config.jitter
        delay = min(self._current_delay * jitter, self._config.max_delay)

        self._retry_count += 1
        self._current_delay = min(
            self._current_delay * self._config.multiplier,
            self._config.max_delay,
        )
        return max(0.0, delay)

    async def wait(self, stop_event: asyncio.Event | None = None) -> float:
        """
        等待并返回实际等待时间

        传入 stop_event 时，事件被设置会提前结束等待。
        """
        delay = self.next_delay()
        if delay <= 0:
            return 0.0

        if stop_event is None:
            await asyncio.sleep(delay)
        else:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
        return delay

    def get_delay_for_attempt(self, attempt: int) -> float:
        """获取指定尝试次数的延迟（不改变状态）"""
        delay = self._config.base_delay * (self._config.multiplier ** attempt)
        return min(delay, self._config.max_delay)
