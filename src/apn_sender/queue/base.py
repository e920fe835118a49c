"""
任务源抽象基类

任务的存储与分发由外部队列负责，发送端只依赖这里定义的接口：
fetch -> (send) -> ack / fail。
"""

from abc import ABC, abstractmethod
from typing import Any

from apn_sender.domain.models import Job


class JobSource(ABC):
    """
    任务源

    fetch 阻塞等待下一条任务（带超时，以便循环能响应关闭信号）；
    fail 把失败交给队列自身的失败处理机制（重新入队或死信）。
    """

    async def start(self) -> None:
        """启动任务源（默认无操作）"""

    async def stop(self) -> None:
        """停止任务源（默认无操作）"""

    @abstractmethod
    async def fetch(self, timeout: float = 5.0) -> Job | None:
        """
        拉取任务

        Args:
            timeout: 超时时间（秒）

        Returns:
            任务，超时返回 None
        """

    @abstractmethod
    async def ack(self, job: Job) -> bool:
        """确认任务已投递"""

    @abstractmethod
    async def fail(self, job: Job, error: BaseException) -> bool:
        """
        上报任务失败

        Args:
            job: 失败的任务
            error: 失败原因

        Returns:
            是否上报成功
        """

    @abstractmethod
    async def enqueue(self, data: dict[str, Any]) -> str:
        """投递任务，返回任务 ID"""


async def notify(source: JobSource, token: str, **options: Any) -> str:
    """
    投递一条推送任务

    Example:
        await notify(source, token, alert="Hi", badge=3, sound=True, order_id=42)
    """
    data = {"token": token}
    data.update({k: v for k, v in options.items() if v is not None})
    return await source.enqueue(data)
