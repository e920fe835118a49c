"""
内存任务源

用于测试和嵌入式使用，不跨进程。
"""

import asyncio
import uuid
from typing import Any

from apn_sender.domain.errors import get_error_code
from apn_sender.domain.models import Job
from apn_sender.queue.base import JobSource


class MemoryJobSource(JobSource):
    """基于 asyncio.Queue 的任务源"""

    def __init__(self, max_size: int = 0):
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=max_size)
        self.acked: list[Job] = []
        self.failed: list[tuple[Job, str, str]] = []

    @property
    def size(self) -> int:
        return self._queue.qsize()

    async def fetch(self, timeout: float = 5.0) -> Job | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    async def ack(self, job: Job) -> bool:
        self.acked.append(job)
        return True

    async def fail(self, job: Job, error: BaseException) -> bool:
        self.failed.append((job, get_error_code(error), str(error)))
        return True

    async def enqueue(self, data: dict[str, Any]) -> str:
        job_id = uuid.uuid4().hex
        await self._queue.put(Job(job_id=job_id, data=dict(data)))
        return job_id
