"""
任务源模块

- MemoryJobSource：进程内队列
- RedisJobSource：Redis Streams 消费者组
"""

from apn_sender.queue.base import JobSource, notify
from apn_sender.queue.memory_queue import MemoryJobSource
from apn_sender.queue.redis_queue import QueueKeys, RedisJobSource, ensure_consumer_group

__all__ = [
    "JobSource",
    "notify",
    "MemoryJobSource",
    "RedisJobSource",
    "QueueKeys",
    "ensure_consumer_group",
]
