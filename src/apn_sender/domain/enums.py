"""
推送域枚举定义
"""

from enum import Enum

from apn_sender.domain.errors import ConfigError


class Environment(str, Enum):
    """网关环境"""

    PRODUCTION = "production"    # 正式网关
    SANDBOX = "sandbox"          # 沙箱网关

    @classmethod
    def parse(cls, value: "str | Environment | None") -> "Environment":
        """
        解析环境配置

        "production"（允许 ":production" 写法）为正式环境，
        其他任何非空值都视为沙箱。空值直接报错，绝不默认到正式环境。
        """
        if isinstance(value, Environment):
            return value
        if value is None or not str(value).strip():
            raise ConfigError("未指定推送环境", config_key="environment")

        normalized = str(value).strip().lstrip(":").lower()
        if normalized == cls.PRODUCTION.value:
            return cls.PRODUCTION
        return cls.SANDBOX


class ConnectionState(str, Enum):
    """连接状态"""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class JobState(str, Enum):
    """单个任务的处理状态"""

    FETCHED = "fetched"          # 已取出
    SENDING = "sending"          # 发送中
    DELIVERED = "delivered"      # 已写入网关
    FAILED = "failed"            # 失败（已上报队列）
