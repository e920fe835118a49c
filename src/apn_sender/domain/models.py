"""
推送域模型定义

- Notification：一条待发送的推送
- FeedbackItem：Feedback 服务返回的一条失效 token 记录
- Job：从任务源取出的一条任务
- Connection：一次到网关的 TLS 会话
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from apn_sender.domain.errors import EncodingError

# 任务中保留的键，其他键都作为自定义数据放入 payload
RESERVED_KEYS = frozenset({"token", "alert", "badge", "sound"})

# payload 顶层保留键
APS_KEY = "aps"

# sound=True 时使用的默认铃声
DEFAULT_SOUND = "default"

_TOKEN_STRIP_RE = re.compile(r"[\s<>]")


def normalize_token(token: str) -> str:
    """去掉 token 中的空白和尖括号，并转为小写"""
    return _TOKEN_STRIP_RE.sub("", token or "").lower()


@dataclass
class Notification:
    """
    推送通知

    token 以十六进制字符串提供，编码时再转为字节。
    custom 中的键原样放在 payload 顶层，与 "aps" 并列。
    """

    token: str
    alert: str | dict[str, Any] | None = None
    badge: int | None = None
    sound: str | bool | None = None
    custom: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_job(cls, data: dict[str, Any]) -> "Notification":
        """
        从任务数据构造通知

        Args:
            data: {token, alert?, badge?, sound?, <custom_key>: any, ...}

        Raises:
            EncodingError: 缺少 token
        """
        token = data.get("token")
        if not token or not isinstance(token, str):
            raise EncodingError("任务缺少 token", field="token")

        custom = {k: v for k, v in data.items() if k not in RESERVED_KEYS}
        return cls(
            token=token,
            alert=data.get("alert"),
            badge=data.get("badge"),
            sound=data.get("sound"),
            custom=custom,
        )

    @property
    def token_bytes(self) -> bytes:
        """十六进制 token 解码后的字节"""
        normalized = normalize_token(self.token)
        if not normalized:
            raise EncodingError("token 为空", field="token")
        try:
            return bytes.fromhex(normalized)
        except ValueError as e:
            raise EncodingError(f"token 不是合法的十六进制字符串: {e}", field="token") from e

    def aps(self) -> dict[str, Any]:
        """构造 aps 字典，缺省字段不输出"""
        aps: dict[str, Any] = {}
        if self.alert is not None:
            aps["alert"] = self.alert
        if self.badge is not None:
            if isinstance(self.badge, bool) or not isinstance(self.badge, int) or self.badge < 0:
                raise EncodingError(f"badge 必须是非负整数: {self.badge!r}", field="badge")
            aps["badge"] = self.badge
        if self.sound is not None and self.sound is not False:
            aps["sound"] = DEFAULT_SOUND if self.sound is True else str(self.sound)
        return aps

    def payload(self) -> dict[str, Any]:
        """
        构造 payload 对象

        结构为 {"aps": {...}, <custom_key>: ...}，保留键优先：
        自定义数据里的 "aps" 会被丢弃。
        """
        payload: dict[str, Any] = {APS_KEY: self.aps()}
        for key, value in self.custom.items():
            if key == APS_KEY or key in RESERVED_KEYS:
                logger.warning("自定义数据与保留键冲突，已忽略: {}", key)
                continue
            payload[key] = value
        return payload


@dataclass(frozen=True)
class FeedbackItem:
    """Feedback 记录：网关判定 token 失效的时间和 token"""

    timestamp: datetime
    token: str

    @classmethod
    def from_wire(cls, epoch: int, token: bytes) -> "FeedbackItem":
        return cls(
            timestamp=datetime.fromtimestamp(epoch, tz=UTC),
            token=token.hex(),
        )

    @property
    def epoch(self) -> int:
        """秒级时间戳"""
        return int(self.timestamp.timestamp())

    def __str__(self) -> str:
        return self.token


@dataclass
class Job:
    """
    任务

    data 即队列中的任务数据；receipt 为任务源自己的回执（用于 ack/fail）。
    """

    job_id: str
    data: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    receipt: Any = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class Connection:
    """到网关的一次 TLS 会话"""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    host: str
    port: int
    credentials: Any = None
    open: bool = True
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_usable(self) -> bool:
        """连接是否可写"""
        return self.open and not self.writer.is_closing()
