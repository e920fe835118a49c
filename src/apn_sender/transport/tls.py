"""
TLS 会话

凭证包（证书/私钥）只读，可在发送连接与 Feedback 连接之间共享。
"""

import asyncio
import socket
import ssl
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from apn_sender.domain import errors
from apn_sender.transport.endpoints import Endpoint


@dataclass(frozen=True)
class CredentialBundle:
    """
    凭证包

    key_path 为空时私钥与证书在同一个 PEM 文件中。
    ca_path 可选，用于校验网关证书（默认使用系统 CA）。
    """

    cert_path: str
    key_path: str | None = None
    passphrase: str | None = None
    ca_path: str | None = None

    def __repr__(self) -> str:
        return (
            f"CredentialBundle(cert_path={self.cert_path!r}, key_path={self.key_path!r}, "
            f"passphrase={'***' if self.passphrase else None}, ca_path={self.ca_path!r})"
        )


def create_client_ssl_context(
    credentials: CredentialBundle,
    verify_server: bool = True,
) -> ssl.SSLContext:
    """
    创建双向认证的客户端 SSL 上下文

    Raises:
        ConfigError: 证书文件不存在或无法加载
    """
    cert_path = Path(credentials.cert_path)
    if not cert_path.exists():
        raise errors.ConfigError(f"证书文件不存在: {cert_path}", config_key="cert_path")

    key_path = Path(credentials.key_path) if credentials.key_path else None
    if key_path and not key_path.exists():
        raise errors.ConfigError(f"私钥文件不存在: {key_path}", config_key="key_path")

    try:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        if credentials.ca_path:
            ca_path = Path(credentials.ca_path)
            if not ca_path.exists():
                raise errors.ConfigError(f"CA 证书文件不存在: {ca_path}", config_key="ca_path")
            context.load_verify_locations(str(ca_path))
        else:
            context.load_default_certs(ssl.Purpose.SERVER_AUTH)

        context.load_cert_chain(
            str(cert_path),
            str(key_path) if key_path else None,
            password=credentials.passphrase,
        )

        if not verify_server:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        return context
    except ssl.SSLError as e:
        raise errors.ConfigError(f"SSL 配置错误: {e}", config_key="cert_path") from e


async def open_tls_stream(
    endpoint: Endpoint,
    ssl_context: ssl.SSLContext,
    timeout: float = 10.0,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    建立 TLS 连接，不做内部重试

    Raises:
        ConnectionError: 认证失败、DNS 解析失败、超时或其他网络错误
    """
    host, port = endpoint
    try:
        return await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=ssl_context, server_hostname=host),
            timeout=timeout,
        )
    except ssl.SSLError as e:
        logger.error("TLS 握手失败 {}: {}", endpoint, e)
        raise errors.ConnectionError(
            f"TLS 认证失败: {e}", host=host, port=port, details={"reason": "auth"}
        ) from e
    except socket.gaierror as e:
        raise errors.ConnectionError(
            f"DNS 解析失败: {host}", host=host, port=port, details={"reason": "dns"}
        ) from e
    except TimeoutError as e:
        raise errors.ConnectionError(
            f"连接超时 ({timeout}s): {endpoint}", host=host, port=port, details={"reason": "timeout"}
        ) from e
    except OSError as e:
        raise errors.ConnectionError(
            f"连接失败 {endpoint}: {e}", host=host, port=port, details={"reason": "network"}
        ) from e
