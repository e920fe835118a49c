"""
网关连接管理

每个 ConnectionManager 只持有一条到网关的 TLS 连接，
状态只在 connect / close / 写入失败时变化：

    DISCONNECTED -> CONNECTED -> DISCONNECTED

写入失败时断开、退避，然后重连重发一次；
重发仍失败则抛出 SendError，不无限重试。
"""

import asyncio
import contextlib
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from apn_sender.domain import errors
from apn_sender.domain.enums import ConnectionState, Environment
from apn_sender.domain.models import Connection, Notification
from apn_sender.services.resilience import BackoffConfig, ExponentialBackoff
from apn_sender.transport.codec import DEVICE_TOKEN_SIZE, MAX_PAYLOAD_SIZE, encode_notification
from apn_sender.transport.endpoints import Endpoint, gateway_endpoint
from apn_sender.transport.tls import CredentialBundle, create_client_ssl_context, open_tls_stream

StreamOpener = Callable[
    [Endpoint, ssl.SSLContext, float],
    Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]],
]

# 写入层面的失败：broken pipe、reset、超时等
_WRITE_ERRORS = (OSError, TimeoutError)


@dataclass
class ConnectionStats:
    """连接统计"""

    connects: int = 0
    reconnects: int = 0
    sent: int = 0
    write_failures: int = 0
    last_connect_time: datetime | None = None
    last_failure_time: datetime | None = None
    last_failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connects": self.connects,
            "reconnects": self.reconnects,
            "sent": self.sent,
            "write_failures": self.write_failures,
            "last_connect_time": (
                self.last_connect_time.isoformat() if self.last_connect_time else None
            ),
            "last_failure_time": (
                self.last_failure_time.isoformat() if self.last_failure_time else None
            ),
            "last_failure_reason": self.last_failure_reason,
        }


class ConnectionManager:
    """
    网关连接管理器

    - connect(): 建立并保存唯一的活动连接（已连接时直接返回）
    - send(): 编码、按需连接、写入；失败后重连重发一次
    - close(): 释放连接，可重复调用
    """

    def __init__(
        self,
        environment: Environment | str,
        credentials: CredentialBundle,
        *,
        endpoint: Endpoint | None = None,
        ssl_context: ssl.SSLContext | None = None,
        opener: StreamOpener | None = None,
        connect_timeout: float = 10.0,
        write_timeout: float = 10.0,
        token_size: int | None = DEVICE_TOKEN_SIZE,
        max_payload_size: int = MAX_PAYLOAD_SIZE,
        backoff: BackoffConfig | None = None,
    ):
        self._environment = Environment.parse(environment)
        self._credentials = credentials
        self._endpoint = endpoint or gateway_endpoint(self._environment)
        self._ssl_context = ssl_context
        self._opener = opener or open_tls_stream
        self._connect_timeout = connect_timeout
        self._write_timeout = write_timeout
        self._token_size = token_size
        self._max_payload_size = max_payload_size
        self._backoff = ExponentialBackoff(backoff)

        self._connection: Connection | None = None
        self._lock = asyncio.Lock()
        self._stats = ConnectionStats()

    # ==================== 属性 ====================

    @property
    def environment(self) -> Environment:
        return self._environment

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def connection(self) -> Connection | None:
        return self._connection

    @property
    def state(self) -> ConnectionState:
        if self._connection is not None and self._connection.is_usable:
            return ConnectionState.CONNECTED
        return ConnectionState.DISCONNECTED

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def get_stats(self) -> ConnectionStats:
        return self._stats

    # ==================== 生命周期 ====================

    async def connect(self) -> Connection:
        """
        建立连接

        Raises:
            ConnectionError: 认证失败、DNS 失败或超时（不在内部重试）
        """
        async with self._lock:
            return await self._connect()

    async def close(self) -> None:
        """关闭连接（幂等）"""
        async with self._lock:
            await self._drop_connection()

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ==================== 发送 ====================

    def encode(self, notification: Notification) -> bytes:
        """编码通知帧，失败时抛出 EncodingError"""
        return encode_notification(
            notification.token_bytes,
            notification.payload(),
            token_size=self._token_size,
            max_payload_size=self._max_payload_size,
        )

    async def send(self, notification: Notification) -> bool:
        """
        发送一条通知

        编码在任何写入之前完成，EncodingError 不会产生部分写入。

        Raises:
            EncodingError: 通知无法编码
            ConnectionError: 首次建立会话失败
            SendError: 写入失败后重连失败，或重连重发一次后仍写入失败
        """
        frame = self.encode(notification)
        return await self.send_frame(frame)

    async def send_frame(self, frame: bytes) -> bool:
        """发送已编码的通知帧"""
        async with self._lock:
            try:
                await self._write(frame)
            except _WRITE_ERRORS as e:
                self._record_failure(e)
                logger.warning("写入网关失败，准备重连重发: {}", e)
                await self._drop_connection()

                delay = await self._backoff.wait()
                if delay:
                    logger.info("等待 {:.2f} 秒后重连 {}", delay, self._endpoint)
                self._stats.reconnects += 1

                try:
                    await self._write(frame)
                except errors.ConnectionError as reconnect_error:
                    self._record_failure(reconnect_error)
                    raise errors.SendError(
                        f"重连网关失败: {reconnect_error.message}",
                        details={"endpoint": str(self._endpoint), "reason": "reconnect"},
                    ) from reconnect_error
                except _WRITE_ERRORS as retry_error:
                    self._record_failure(retry_error)
                    await self._drop_connection()
                    raise errors.SendError(
                        f"重连后写入仍失败: {retry_error}",
                        details={"endpoint": str(self._endpoint), "reason": "write"},
                    ) from retry_error

            self._backoff.reset()
            self._stats.sent += 1
            return True

    # ==================== 私有方法 ====================

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = create_client_ssl_context(self._credentials)
        return self._ssl_context

    async def _connect(self) -> Connection:
        if self._connection is not None and self._connection.is_usable:
            return self._connection
        if self._connection is not None:
            await self._drop_connection()

        reader, writer = await self._opener(
            self._endpoint, self._get_ssl_context(), self._connect_timeout
        )
        self._connection = Connection(
            reader=reader,
            writer=writer,
            host=self._endpoint.host,
            port=self._endpoint.port,
            credentials=self._credentials,
        )
        self._stats.connects += 1
        self._stats.last_connect_time = datetime.now(UTC)
        logger.info("已连接网关: {} ({})", self._endpoint, self._environment.value)
        return self._connection

    async def _write(self, frame: bytes) -> None:
        connection = await self._connect()
        if not connection.is_usable:
            raise ConnectionResetError("连接已关闭")

        connection.writer.write(frame)
        await asyncio.wait_for(connection.writer.drain(), timeout=self._write_timeout)

    async def _drop_connection(self) -> None:
        connection = self._connection
        self._connection = None
        if connection is None:
            return

        connection.open = False
        connection.writer.close()
        with contextlib.suppress(OSError, TimeoutError):
            await asyncio.wait_for(connection.writer.wait_closed(), timeout=self._write_timeout)
        logger.debug("网关连接已关闭: {}", self._endpoint)

    def _record_failure(self, e: BaseException) -> None:
        self._stats.write_failures += 1
        self._stats.last_failure_time = datetime.now(UTC)
        self._stats.last_failure_reason = str(e) or type(e).__name__
