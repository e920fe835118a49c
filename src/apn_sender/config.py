"""
发送端配置模块

优先级：默认值 < 配置文件 (YAML) < 环境变量 < 显式参数
"""

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from loguru import logger

from apn_sender.domain.enums import Environment
from apn_sender.domain.errors import ConfigError
from apn_sender.services.resilience import BackoffConfig
from apn_sender.transport.codec import DEVICE_TOKEN_SIZE, MAX_PAYLOAD_SIZE
from apn_sender.transport.endpoints import Endpoint, feedback_endpoint, gateway_endpoint
from apn_sender.transport.tls import CredentialBundle

DEFAULT_CONFIG_FILE = Path("apn_sender.yaml")

_ENV_LOADED = False

# 环境变量 -> (配置项, 类型)
_ENV_MAPPING: dict[str, tuple[str, type]] = {
    "APN_ENVIRONMENT": ("environment", str),
    "APN_CERT_PATH": ("cert_path", str),
    "APN_KEY_PATH": ("key_path", str),
    "APN_CERT_PASSPHRASE": ("cert_passphrase", str),
    "APN_CA_PATH": ("ca_path", str),
    "APN_GATEWAY_HOST": ("gateway_host", str),
    "APN_GATEWAY_PORT": ("gateway_port", int),
    "APN_FEEDBACK_HOST": ("feedback_host", str),
    "APN_FEEDBACK_PORT": ("feedback_port", int),
    "APN_CONNECT_TIMEOUT": ("connect_timeout", float),
    "APN_WRITE_TIMEOUT": ("write_timeout", float),
    "APN_READ_TIMEOUT": ("read_timeout", float),
    "APN_POLL_TIMEOUT": ("poll_timeout", float),
    "APN_MAX_ATTEMPTS": ("max_attempts", int),
    "APN_REDIS_URL": ("redis_url", str),
    "APN_REDIS_NAMESPACE": ("redis_namespace", str),
    "APN_RECLAIM_MIN_IDLE": ("reclaim_min_idle", float),
    "APN_RECLAIM_INTERVAL": ("reclaim_interval", float),
    "APN_LOG_LEVEL": ("log_level", str),
    "APN_LOG_FILE": ("log_file", str),
}


def _load_env_file() -> None:
    """加载 .env 环境变量（仅一次）"""
    global _ENV_LOADED
    if _ENV_LOADED:
        return
    _ENV_LOADED = True

    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)


def _load_env_config() -> dict[str, Any]:
    """读取环境变量配置"""
    env_config: dict[str, Any] = {}
    for env_key, (config_key, cast) in _ENV_MAPPING.items():
        value = os.getenv(env_key)
        if value is None or value == "":
            continue
        try:
            env_config[config_key] = cast(value)
        except ValueError:
            logger.warning("环境变量 {} 格式错误，已忽略: {}", env_key, value)
    return env_config


@dataclass
class SenderConfig:
    """发送端配置"""

    # 环境（production / sandbox），必须显式配置
    environment: str = ""

    # 证书
    cert_path: str = ""
    key_path: str = ""
    cert_passphrase: str = ""
    ca_path: str = ""

    # 地址覆盖（为空时按环境选择）
    gateway_host: str = ""
    gateway_port: int = 0
    feedback_host: str = ""
    feedback_port: int = 0

    # 超时（秒）
    connect_timeout: float = 10.0
    write_timeout: float = 10.0
    read_timeout: float = 30.0
    poll_timeout: float = 5.0

    # 协议限制
    token_size: int = DEVICE_TOKEN_SIZE
    max_payload_size: int = MAX_PAYLOAD_SIZE

    # 重连退避
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0

    # 任务队列
    redis_url: str = "redis://localhost:6379/0"
    redis_namespace: str = "apn"
    consumer_name: str = "sender"
    max_attempts: int = 3

    # pending 消息回收（秒）：空闲超过 reclaim_min_idle 的消息每 reclaim_interval 检查一次
    reclaim_min_idle: float = 60.0
    reclaim_interval: float = 30.0

    # 日志
    log_level: str = "INFO"
    log_file: str = ""

    # 关闭等待时间（秒）
    grace_period: float = 30.0

    @property
    def env(self) -> Environment:
        return Environment.parse(self.environment)

    def validate(self) -> "SenderConfig":
        """
        校验配置

        Raises:
            ConfigError: 配置不合法
        """
        Environment.parse(self.environment)
        if not self.cert_path:
            raise ConfigError("未配置证书路径 cert_path", config_key="cert_path")
        for key in ("connect_timeout", "write_timeout", "read_timeout", "poll_timeout"):
            if getattr(self, key) <= 0:
                raise ConfigError(f"{key} 必须大于 0", config_key=key)
        if self.max_payload_size <= 0:
            raise ConfigError("max_payload_size 必须大于 0", config_key="max_payload_size")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts 至少为 1", config_key="max_attempts")
        for key in ("reclaim_min_idle", "reclaim_interval"):
            if getattr(self, key) <= 0:
                raise ConfigError(f"{key} 必须大于 0", config_key=key)
        return self

    def credentials(self) -> CredentialBundle:
        return CredentialBundle(
            cert_path=self.cert_path,
            key_path=self.key_path or None,
            passphrase=self.cert_passphrase or None,
            ca_path=self.ca_path or None,
        )

    def gateway(self) -> Endpoint:
        return gateway_endpoint(self.env, self.gateway_host or None, self.gateway_port or None)

    def feedback(self) -> Endpoint:
        return feedback_endpoint(self.env, self.feedback_host or None, self.feedback_port or None)

    def reconnect_backoff(self) -> BackoffConfig:
        return BackoffConfig(
            base_delay=self.reconnect_base_delay,
            max_delay=self.reconnect_max_delay,
        )

    def to_dict(self) -> dict[str, Any]:
        """转换为字典（口令脱敏）"""
        data = asdict(self)
        if data["cert_passphrase"]:
            data["cert_passphrase"] = "***"
        return data

    @classmethod
    def load_from_file(cls, path: Path) -> dict[str, Any]:
        """读取配置文件，返回配置项字典"""
        if not path.exists():
            return {}

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"配置文件格式错误: {path}")

        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            logger.warning("配置文件包含未知配置项，已忽略: {}", ", ".join(sorted(unknown)))
        return {k: v for k, v in data.items() if k in known and v is not None}


def load_config(path: str | Path | None = None, **overrides: Any) -> SenderConfig:
    """
    加载配置

    Args:
        path: 配置文件路径，默认读取 APN_CONFIG_FILE 或 ./apn_sender.yaml
        **overrides: 显式覆盖（值为 None 的项忽略）
    """
    _load_env_file()

    config_path = Path(path or os.getenv("APN_CONFIG_FILE") or DEFAULT_CONFIG_FILE)
    file_config = SenderConfig.load_from_file(config_path)
    if file_config:
        logger.info("已加载配置文件: {}", config_path)

    merged = {**file_config, **_load_env_config()}
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return SenderConfig(**merged)
