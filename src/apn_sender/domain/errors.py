"""
推送域错误定义

EncodingError 表示任务本身有问题（不可原样重试），
ConnectionError 表示无法建立会话（证书/DNS/超时），
SendError 表示写入失败后重连失败或重发仍失败（可重新入队）。
"""

from typing import Any


class SenderError(Exception):
    """推送基础错误"""

    def __init__(
        self,
        message: str,
        code: str = "SENDER_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class EncodingError(SenderError):
    """编码错误（payload 过大、token 长度不合法等）"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="ENCODING_ERROR", details=details)
        self.field = field


class ConnectionError(SenderError):
    """连接错误（认证失败、DNS 失败、连接超时）"""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="CONNECTION_ERROR", details=details)
        self.host = host
        self.port = port


class SendError(SenderError):
    """发送错误（重连重发一次后仍失败）"""

    def __init__(
        self,
        message: str,
        attempts: int = 2,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="SEND_ERROR", details=details)
        self.attempts = attempts


class FeedbackDecodeError(SenderError):
    """Feedback 流末尾存在不完整记录"""

    def __init__(
        self,
        message: str,
        trailing_bytes: int = 0,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="FEEDBACK_DECODE_ERROR", details=details)
        self.trailing_bytes = trailing_bytes


class ConfigError(SenderError):
    """配置错误"""

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="CONFIG_ERROR", details=details)
        self.config_key = config_key


def is_retryable(e: Exception) -> bool:
    """判断异常是否可重试"""
    return isinstance(e, (SendError, ConnectionError))


def get_error_code(e: Exception) -> str:
    """获取错误码"""
    if isinstance(e, SenderError):
        return e.code
    return "UNKNOWN_ERROR"
