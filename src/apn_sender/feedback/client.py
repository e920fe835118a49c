"""
Feedback 客户端

连接 Feedback 服务一次，读取到对端关闭，解码全部记录并缓存。
服务端的记录只下发一次，缓存用于防止误重复调用导致数据丢失；
force=True 会丢弃旧缓存并重新拉取。
"""

import asyncio
import contextlib
import ssl

from loguru import logger

from apn_sender.domain.enums import Environment
from apn_sender.domain.models import FeedbackItem
from apn_sender.transport.codec import FeedbackDecoder
from apn_sender.transport.connection import StreamOpener
from apn_sender.transport.endpoints import Endpoint, feedback_endpoint
from apn_sender.transport.tls import CredentialBundle, create_client_ssl_context, open_tls_stream


class FeedbackClient:
    """
    Feedback 客户端

    缓存属于实例，不同环境的客户端互不影响。不自动重连，
    ConnectionError 直接抛给调用方。
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
        read_timeout: float = 30.0,
        read_size: int = 4096,
    ):
        self._environment = Environment.parse(environment)
        self._credentials = credentials
        self._endpoint = endpoint or feedback_endpoint(self._environment)
        self._ssl_context = ssl_context
        self._opener = opener or open_tls_stream
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._read_size = read_size
        self._cache: tuple[FeedbackItem, ...] | None = None

    @property
    def environment(self) -> Environment:
        return self._environment

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def cached(self) -> tuple[FeedbackItem, ...] | None:
        """已缓存的记录，尚未拉取时为 None"""
        return self._cache

    def invalidate(self) -> None:
        """丢弃缓存（未读取的数据无法再从服务端取回）"""
        self._cache = None

    async def data(self, force: bool = False) -> tuple[FeedbackItem, ...]:
        """
        获取 Feedback 记录

        Args:
            force: 忽略缓存重新拉取；旧缓存会被永久替换

        Raises:
            ConnectionError: 无法连接 Feedback 服务
        """
        if self._cache is not None and not force:
            return self._cache

        self._cache = await self._fetch()
        return self._cache

    async def tokens(self, force: bool = False) -> tuple[str, ...]:
        """获取失效的设备 token（十六进制）"""
        return tuple(item.token for item in await self.data(force=force))

    async def _fetch(self) -> tuple[FeedbackItem, ...]:
        if self._ssl_context is None:
            self._ssl_context = create_client_ssl_context(self._credentials)

        reader, writer = await self._opener(
            self._endpoint, self._ssl_context, self._connect_timeout
        )
        logger.info("已连接 Feedback 服务: {} ({})", self._endpoint, self._environment.value)

        decoder = FeedbackDecoder()
        items: list[FeedbackItem] = []
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(
                        reader.read(self._read_size), timeout=self._read_timeout
                    )
                except TimeoutError:
                    logger.warning(
                        "读取 Feedback 超时 ({}s)，按流结束处理，已解码 {} 条",
                        self._read_timeout,
                        len(items),
                    )
                    break
                except OSError as e:
                    logger.warning("读取 Feedback 时连接中断，按流结束处理: {}", e)
                    break
                if not chunk:
                    break
                items.extend(decoder.feed(chunk))
            decoder.close()
        finally:
            writer.close()
            with contextlib.suppress(OSError, TimeoutError):
                await asyncio.wait_for(writer.wait_closed(), timeout=self._connect_timeout)

        logger.info("Feedback 读取完成: {} 条失效 token", len(items))
        return tuple(items)
