"""
Redis Streams 任务源

生产者通过 XADD 写入任务流，发送端以消费者组方式 XREADGROUP 读取：
- 投递成功：XACK
- 可重试失败（SendError / ConnectionError）：带 attempts+1 重新 XADD，再 XACK
- 不可重试或超过最大次数：写入失败流，再 XACK

读取后未确认的消息（进程崩溃、关闭超时被取消、上报失败时 Redis 不可用）
留在 pending 列表中，由 XAUTOCLAIM 定期回收；投递次数过多的写入失败流。

Key 约定：{namespace}:apn:jobs / {namespace}:apn:jobs:failed
"""

import asyncio
import json
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, ClassVar, TypeVar

from loguru import logger
from redis.exceptions import ConnectionError, ResponseError, TimeoutError

from apn_sender.domain.errors import get_error_code, is_retryable
from apn_sender.domain.models import Job
from apn_sender.queue.base import JobSource

T = TypeVar("T")


class QueueKeys:
    """Redis Key 生成器"""

    DEFAULT_NAMESPACE: ClassVar[str] = "apn"

    def __init__(self, namespace: str | None = None):
        self._namespace = namespace or self.DEFAULT_NAMESPACE

    @property
    def namespace(self) -> str:
        return self._namespace

    def job_stream(self) -> str:
        """待发送任务流"""
        return f"{self._namespace}:apn:jobs"

    def failed_stream(self) -> str:
        """失败任务流"""
        return f"{self._namespace}:apn:jobs:failed"

    def consumer_group(self) -> str:
        """消费者组名"""
        return f"{self._namespace}:apn:senders"


@dataclass
class ReclaimConfig:
    """pending 消息回收配置"""

    # 消息空闲超过该时间（毫秒）才会被回收
    min_idle_time_ms: int = 60000

    # 每次回收的最大消息数
    max_reclaim_count: int = 10

    # 回收检查间隔（秒）
    check_interval_seconds: float = 30.0

    # 投递次数超过该值写入失败流
    max_deliveries: int = 3


async def ensure_consumer_group(redis_client: Any, stream_key: str, group_name: str) -> bool:
    """确保消费者组存在"""
    try:
        await redis_client.xgroup_create(stream_key, group_name, id="0", mkstream=True)
        return True
    except Exception as e:
        if "BUSYGROUP" in str(e):
            return True
        logger.error(f"创建消费者组失败: {e}")
        raise


class RedisJobSource(JobSource):
    """Redis Streams 任务源"""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        namespace: str | None = None,
        consumer_name: str = "sender",
        max_attempts: int = 3,
        stream_max_len: int = 100000,
        redis_client: Any = None,
        reclaim: ReclaimConfig | None = None,
    ):
        self._redis_url = redis_url
        self._redis = redis_client
        self._owns_client = redis_client is None
        self._keys = QueueKeys(namespace)
        self._consumer_name = consumer_name
        self._max_attempts = max_attempts
        self._stream_max_len = stream_max_len
        self._reclaim = reclaim or ReclaimConfig()
        self._reclaimed: deque[Job] = deque()
        self._next_reclaim_at = 0.0
        self._running = False
        self._poll_error_count = 0
        self._poll_backoff_until = 0.0

    @property
    def keys(self) -> QueueKeys:
        return self._keys

    @property
    def is_running(self) -> bool:
        return self._running

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        """连接 Redis，确保消费者组存在，并回收一次 pending 消息"""
        if self._running:
            return

        if self._redis is None:
            self._redis = self._create_client()

        await self._redis.ping()
        await ensure_consumer_group(
            self._redis, self._keys.job_stream(), self._keys.consumer_group()
        )
        self._running = True
        logger.info(f"Redis 任务源已启动: {self._keys.job_stream()}")

        try:
            await self.reclaim_pending()
        except (ConnectionError, TimeoutError, ResponseError) as e:
            logger.warning(f"启动时回收 pending 消息失败: {e}")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        self._reclaimed.clear()
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
        logger.info("Redis 任务源已停止")

    def _create_client(self) -> Any:
        import redis.asyncio as aioredis
        from redis.asyncio.retry import Retry
        from redis.backoff import ExponentialBackoff

        return aioredis.from_url(
            self._redis_url,
            retry_on_timeout=True,
            retry=Retry(ExponentialBackoff(cap=1.0, base=0.1), retries=3),
            retry_on_error=[ConnectionError, TimeoutError],
            socket_timeout=30,
            socket_connect_timeout=10,
            socket_keepalive=True,
            health_check_interval=30,
            encoding="utf-8",
            decode_responses=True,
        )

    async def _reconnect(self) -> bool:
        if not self._owns_client:
            return False
        if self._redis is not None:
            await self._redis.aclose()
        self._redis = self._create_client()
        try:
            await self._redis.ping()
            return True
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Redis 重连失败: {e}")
            return False

    async def _run_with_reconnect(self, op_name: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        except (ConnectionError, TimeoutError) as e:
            logger.warning(f"{op_name} 遇到 Redis 连接异常，尝试重连: {e}")
            if not await self._reconnect():
                raise
            return await operation()

    # ==================== 任务操作 ====================

    async def fetch(self, timeout: float = 5.0) -> Job | None:
        """
        读取一条任务

        先返回回收到的 pending 消息，再 XREADGROUP 读取新消息。
        任何异常都只记录并退避，不会抛给发送循环。
        """
        if not self._redis or not self._running:
            return None

        try:
            now = time.monotonic()
            if self._poll_backoff_until > now:
                await asyncio.sleep(self._poll_backoff_until - now)

            if now >= self._next_reclaim_at:
                await self.reclaim_pending()
            if self._reclaimed:
                return self._reclaimed.popleft()

            result = await self._redis.xreadgroup(
                groupname=self._keys.consumer_group(),
                consumername=self._consumer_name,
                streams={self._keys.job_stream(): ">"},
                count=1,
                block=int(timeout * 1000),
            )
            self._poll_error_count = 0
            self._poll_backoff_until = 0.0

            if not result:
                return None
            _, messages = result[0]
            if not messages:
                return None

            msg_id, fields = messages[0]
            return self._decode_job(msg_id, fields)

        except Exception as e:
            self._poll_error_count += 1
            delay = min(30.0, 0.5 * (2 ** (self._poll_error_count - 1)))
            self._poll_backoff_until = time.monotonic() + delay
            logger.error(f"拉取任务失败: {e}")
            logger.warning(f"拉取任务退避 {delay:.1f}s (连续失败 {self._poll_error_count} 次)")
            if isinstance(e, ResponseError) and "NOGROUP" in str(e):
                await self._recreate_group()
            elif self._poll_error_count % 3 == 0:
                await self._reconnect()
            return None

    async def _recreate_group(self) -> None:
        """任务流或消费者组被删除后重新创建"""
        try:
            await ensure_consumer_group(
                self._redis, self._keys.job_stream(), self._keys.consumer_group()
            )
            logger.warning(f"消费者组已重新创建: {self._keys.consumer_group()}")
        except Exception as e:
            logger.error(f"重新创建消费者组失败: {e}")

    async def reclaim_pending(self) -> int:
        """
        XAUTOCLAIM 回收空闲超时的 pending 消息

        回收的消息排在新消息之前返回；投递次数超过上限的写入失败流并确认。

        Returns:
            回收到待重新处理的消息数
        """
        config = self._reclaim
        self._next_reclaim_at = time.monotonic() + config.check_interval_seconds

        stream_key = self._keys.job_stream()
        group_name = self._keys.consumer_group()
        result = await self._redis.xautoclaim(
            stream_key,
            group_name,
            self._consumer_name,
            min_idle_time=config.min_idle_time_ms,
            start_id="0-0",
            count=config.max_reclaim_count,
        )
        if not result:
            return 0

        reclaimed = 0
        for msg_id, fields in result[1]:
            # 已从流中删除的消息只剩 ID
            if not fields:
                await self._redis.xack(stream_key, group_name, msg_id)
                continue

            deliveries = await self._get_delivery_count(msg_id)
            job = self._decode_job(msg_id, fields)
            if deliveries > config.max_deliveries:
                await self._xadd(self._keys.failed_stream(), self._failed_fields(
                    job, "MAX_DELIVERIES_EXCEEDED", f"投递 {deliveries} 次仍未确认"
                ))
                await self._redis.xack(stream_key, group_name, msg_id)
                logger.warning(f"pending 消息投递次数过多，已写入失败流: {msg_id}")
                continue

            self._reclaimed.append(job)
            reclaimed += 1

        if reclaimed:
            logger.info(f"已回收 pending 消息: {reclaimed} 条")
        return reclaimed

    async def _get_delivery_count(self, msg_id: str) -> int:
        entries = await self._redis.xpending_range(
            self._keys.job_stream(),
            self._keys.consumer_group(),
            min=msg_id,
            max=msg_id,
            count=1,
        )
        if not entries:
            return 1
        return int(entries[0].get("times_delivered") or 1)

    async def ack(self, job: Job) -> bool:
        if not self._redis or not self._running:
            return False

        try:
            await self._run_with_reconnect(
                "确认任务",
                lambda: self._redis.xack(
                    self._keys.job_stream(), self._keys.consumer_group(), job.receipt
                ),
            )
            return True
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"确认任务失败: {e}")
            return False

    async def fail(self, job: Job, error: BaseException) -> bool:
        """可重试错误重新入队，否则写入失败流"""
        if not self._redis or not self._running:
            return False

        attempts = job.attempts + 1
        retry = is_retryable(error) and attempts < self._max_attempts
        try:
            if retry:
                fields = self._encode_fields(job.data, attempts)
                fields["last_error"] = str(error)
                await self._run_with_reconnect("任务重新入队", lambda: self._xadd(self._keys.job_stream(), fields))
                logger.info(f"任务重新入队: {job.job_id} (attempts={attempts})")
            else:
                job.attempts = attempts
                fields = self._failed_fields(job, get_error_code(error), str(error))
                await self._run_with_reconnect("写入失败流", lambda: self._xadd(self._keys.failed_stream(), fields))
                logger.warning(f"任务已写入失败流: {job.job_id} ({get_error_code(error)})")

            await self._run_with_reconnect(
                "失败任务确认",
                lambda: self._redis.xack(
                    self._keys.job_stream(), self._keys.consumer_group(), job.receipt
                ),
            )
            return True
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"上报任务失败出错: {e}")
            return False

    async def enqueue(self, data: dict[str, Any]) -> str:
        if self._redis is None:
            self._redis = self._create_client()
        fields = self._encode_fields(data, 0)
        return await self._run_with_reconnect(
            "投递任务", lambda: self._xadd(self._keys.job_stream(), fields)
        )

    # ==================== 编解码 ====================

    async def _xadd(self, stream_key: str, fields: dict[str, str]) -> str:
        if self._stream_max_len > 0:
            return await self._redis.xadd(
                stream_key, fields, maxlen=self._stream_max_len, approximate=True
            )
        return await self._redis.xadd(stream_key, fields)

    @staticmethod
    def _encode_fields(data: dict[str, Any], attempts: int) -> dict[str, str]:
        return {
            "data": json.dumps(data, ensure_ascii=False),
            "attempts": str(attempts),
            "enqueued_at": datetime.now(UTC).isoformat(),
        }

    def _failed_fields(self, job: Job, error_code: str, message: str) -> dict[str, str]:
        fields = self._encode_fields(job.data, job.attempts)
        fields.update({
            "job_id": job.job_id,
            "error_code": error_code,
            "error_message": message,
            "failed_at": datetime.now(UTC).isoformat(),
        })
        return fields

    @staticmethod
    def _decode_job(msg_id: str, fields: dict[str, str]) -> Job:
        raw = fields.get("data") or "{}"
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning(f"任务数据不是合法 JSON: {msg_id}")
            data = {}
        if not isinstance(data, dict):
            data = {}

        try:
            attempts = max(0, int(fields.get("attempts") or 0))
        except ValueError:
            logger.warning(f"任务 attempts 字段不合法，按 0 处理: {msg_id}")
            attempts = 0

        return Job(
            job_id=msg_id,
            data=data,
            attempts=attempts,
            receipt=msg_id,
        )
