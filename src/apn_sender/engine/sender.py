"""
发送循环

单个任务的状态流转：FETCHED -> SENDING -> DELIVERED | FAILED

网关只允许一条连接，因此只有一个顺序循环，没有并发发送者。
单个任务出错只会上报失败，不会终止循环。
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from apn_sender.domain import errors
from apn_sender.domain.enums import JobState
from apn_sender.domain.models import Job, Notification
from apn_sender.queue.base import JobSource
from apn_sender.services.resilience import BackoffConfig, ExponentialBackoff
from apn_sender.transport.connection import ConnectionManager


@dataclass
class SenderStats:
    """发送统计"""

    fetched: int = 0
    delivered: int = 0
    failed: int = 0
    last_error: str | None = None
    last_delivered_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched": self.fetched,
            "delivered": self.delivered,
            "failed": self.failed,
            "last_error": self.last_error,
            "last_delivered_at": (
                self.last_delivered_at.isoformat() if self.last_delivered_at else None
            ),
        }


class SenderWorker:
    """
    发送 Worker

    run_forever 循环从任务源取任务并交给 ConnectionManager 发送；
    stop() 之后会完成正在发送的任务，不再取新任务，并关闭连接。
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        *,
        poll_timeout: float = 5.0,
        failure_backoff: BackoffConfig | None = None,
    ):
        self._connection = connection_manager
        self._poll_timeout = poll_timeout
        self._failure_backoff = ExponentialBackoff(failure_backoff)
        self._stop_event = asyncio.Event()
        self._running = False
        self._stats = SenderStats()
        self._connection_failed = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> SenderStats:
        return self._stats

    def stop(self) -> None:
        """请求停止（当前任务完成后退出循环）"""
        if not self._stop_event.is_set():
            logger.info("发送循环收到停止请求")
        self._stop_event.set()

    async def run_forever(self, job_source: JobSource) -> None:
        """主循环，直到 stop() 被调用"""
        self._running = True
        logger.info("发送循环已启动 -> {}", self._connection.endpoint)

        try:
            while not self._stop_event.is_set():
                try:
                    job = await job_source.fetch(timeout=self._poll_timeout)
                except Exception:
                    logger.exception("拉取任务出现未预期异常")
                    await self._failure_backoff.wait(self._stop_event)
                    continue
                if job is None:
                    continue

                # stop() 在 fetch 期间到达时，已取出的任务仍然发送
                state = await self.process(job, job_source)
                if state == JobState.DELIVERED:
                    self._failure_backoff.reset()
                elif self._connection_failed:
                    await self._failure_backoff.wait(self._stop_event)
        finally:
            self._running = False
            await self._connection.close()
            logger.info("发送循环已停止: {}", self._stats.to_dict())

    async def process(self, job: Job, job_source: JobSource) -> JobState:
        """处理单个任务，返回终态"""
        self._stats.fetched += 1
        self._connection_failed = False
        logger.debug("任务 {} -> {}", job.job_id, JobState.FETCHED.value)

        try:
            notification = Notification.from_job(job.data)
            logger.debug("任务 {} -> {}", job.job_id, JobState.SENDING.value)
            await self._connection.send(notification)
        except errors.SenderError as e:
            self._connection_failed = isinstance(e, errors.ConnectionError) or isinstance(
                e.__cause__, errors.ConnectionError
            )
            return await self._fail(job, job_source, e)
        except Exception as e:
            logger.exception("处理任务 {} 出现未预期异常", job.job_id)
            return await self._fail(job, job_source, e)

        self._stats.delivered += 1
        self._stats.last_delivered_at = datetime.now(UTC)
        await job_source.ack(job)
        logger.debug("任务 {} -> {}", job.job_id, JobState.DELIVERED.value)
        return JobState.DELIVERED

    async def _fail(self, job: Job, job_source: JobSource, error: Exception) -> JobState:
        self._stats.failed += 1
        self._stats.last_error = f"{errors.get_error_code(error)}: {error}"
        logger.warning(
            "任务 {} -> {} ({})",
            job.job_id,
            JobState.FAILED.value,
            self._stats.last_error,
        )
        if not await job_source.fail(job, error):
            logger.error("任务 {} 失败上报未成功", job.job_id)
        return JobState.FAILED
