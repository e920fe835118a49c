"""
依赖注入容器

负责组装发送端的所有组件。
"""

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from apn_sender.config import SenderConfig
from apn_sender.engine.sender import SenderWorker
from apn_sender.feedback.client import FeedbackClient
from apn_sender.queue.base import JobSource
from apn_sender.queue.redis_queue import ReclaimConfig, RedisJobSource
from apn_sender.transport.connection import ConnectionManager


@dataclass
class Container:
    """依赖注入容器"""

    config: SenderConfig | None = None

    connection_manager: ConnectionManager | None = None
    worker: SenderWorker | None = None
    job_source: JobSource | None = None

    _components: dict[str, Any] = field(default_factory=dict)

    def register(self, name: str, component: Any) -> None:
        """注册组件"""
        self._components[name] = component
        setattr(self, name, component)
        logger.debug(f"组件已注册: {name}")

    def get(self, name: str) -> Any | None:
        """获取组件"""
        return self._components.get(name) or getattr(self, name, None)

    def feedback_client(self) -> FeedbackClient:
        """按当前配置创建 Feedback 客户端（缓存属于各自实例）"""
        config = self.config
        return FeedbackClient(
            config.env,
            config.credentials(),
            endpoint=config.feedback(),
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
        )


def create_container(config: SenderConfig, job_source: JobSource | None = None) -> Container:
    """
    创建并配置依赖容器

    Args:
        config: 发送端配置（会先校验）
        job_source: 自定义任务源，默认使用 Redis Streams
    """
    config.validate()
    container = Container(config=config)

    connection_manager = ConnectionManager(
        config.env,
        config.credentials(),
        endpoint=config.gateway(),
        connect_timeout=config.connect_timeout,
        write_timeout=config.write_timeout,
        token_size=config.token_size,
        max_payload_size=config.max_payload_size,
        backoff=config.reconnect_backoff(),
    )
    container.register("connection_manager", connection_manager)

    container.register(
        "worker",
        SenderWorker(
            connection_manager,
            poll_timeout=config.poll_timeout,
            failure_backoff=config.reconnect_backoff(),
        ),
    )

    if job_source is None:
        job_source = RedisJobSource(
            redis_url=config.redis_url,
            namespace=config.redis_namespace,
            consumer_name=config.consumer_name,
            max_attempts=config.max_attempts,
            reclaim=ReclaimConfig(
                min_idle_time_ms=int(config.reclaim_min_idle * 1000),
                check_interval_seconds=config.reclaim_interval,
                max_deliveries=config.max_attempts,
            ),
        )
    container.register("job_source", job_source)

    logger.info("容器组装完成: env={} gateway={}", config.env.value, config.gateway())
    return container
