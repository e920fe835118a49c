"""
网关地址解析

通知连接与 Feedback 连接使用同一个环境配置选择正式或沙箱地址。
"""

from typing import NamedTuple

from apn_sender.domain.enums import Environment


class Endpoint(NamedTuple):
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


GATEWAY_ENDPOINTS = {
    Environment.PRODUCTION: Endpoint("gateway.push.apple.com", 2195),
    Environment.SANDBOX: Endpoint("gateway.sandbox.push.apple.com", 2195),
}

FEEDBACK_ENDPOINTS = {
    Environment.PRODUCTION: Endpoint("feedback.push.apple.com", 2196),
    Environment.SANDBOX: Endpoint("feedback.sandbox.push.apple.com", 2196),
}


def _resolve(
    table: dict[Environment, Endpoint],
    environment: "Environment | str",
    host: str | None,
    port: int | None,
) -> Endpoint:
    default = table[Environment.parse(environment)]
    return Endpoint(host or default.host, port or default.port)


def gateway_endpoint(
    environment: "Environment | str",
    host: str | None = None,
    port: int | None = None,
) -> Endpoint:
    """通知网关地址（host/port 可由配置覆盖）"""
    return _resolve(GATEWAY_ENDPOINTS, environment, host, port)


def feedback_endpoint(
    environment: "Environment | str",
    host: str | None = None,
    port: int | None = None,
) -> Endpoint:
    """Feedback 服务地址（host/port 可由配置覆盖）"""
    return _resolve(FEEDBACK_ENDPOINTS, environment, host, port)
