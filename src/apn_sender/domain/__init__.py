"""
推送域模型

定义发送端与 Feedback 端共用的模型、枚举和错误。
"""

from apn_sender.domain.enums import ConnectionState, Environment, JobState
from apn_sender.domain.errors import (
    ConfigError,
    ConnectionError,
    EncodingError,
    FeedbackDecodeError,
    SendError,
    SenderError,
    get_error_code,
    is_retryable,
)
from apn_sender.domain.models import (
    Connection,
    FeedbackItem,
    Job,
    Notification,
    normalize_token,
)

__all__ = [
    # Models
    "Notification",
    "FeedbackItem",
    "Job",
    "Connection",
    "normalize_token",
    # Enums
    "Environment",
    "ConnectionState",
    "JobState",
    # Errors
    "SenderError",
    "EncodingError",
    "ConnectionError",
    "SendError",
    "FeedbackDecodeError",
    "ConfigError",
    "is_retryable",
    "get_error_code",
]
