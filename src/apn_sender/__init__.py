"""
APN Sender

通过单条持久 TLS 连接向推送网关发送通知，并从 Feedback 服务拉取失效设备 token。
"""

__version__ = "0.1.0"

from apn_sender.domain import (
    ConfigError,
    ConnectionError,
    EncodingError,
    Environment,
    FeedbackDecodeError,
    FeedbackItem,
    Job,
    Notification,
    SendError,
    SenderError,
)
from apn_sender.engine import SenderWorker
from apn_sender.feedback import FeedbackClient
from apn_sender.queue import JobSource, MemoryJobSource, RedisJobSource, notify
from apn_sender.transport import ConnectionManager, CredentialBundle

__all__ = [
    "__version__",
    "Notification",
    "FeedbackItem",
    "Job",
    "Environment",
    "CredentialBundle",
    "ConnectionManager",
    "FeedbackClient",
    "SenderWorker",
    "JobSource",
    "MemoryJobSource",
    "RedisJobSource",
    "notify",
    "SenderError",
    "EncodingError",
    "ConnectionError",
    "SendError",
    "FeedbackDecodeError",
    "ConfigError",
]
