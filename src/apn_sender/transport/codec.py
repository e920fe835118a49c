"""
网关二进制编解码模块

通知帧（简单格式，command = 1）:
    command(1) | token_length(2) | token(N) | payload_length(2) | payload(M)

Feedback 记录（重复出现直到流结束）:
    timestamp(4) | token_length(2) | token(N)

所有整数均为大端序。
"""

import json
import struct
from dataclasses import dataclass
from typing import Any

from loguru import logger

from apn_sender.domain.errors import EncodingError, FeedbackDecodeError
from apn_sender.domain.models import FeedbackItem

COMMAND_SIMPLE = 1
DEVICE_TOKEN_SIZE = 32
MAX_PAYLOAD_SIZE = 256

_FRAME_HEADER = struct.Struct("!BH")
_LENGTH = struct.Struct("!H")
FEEDBACK_HEADER = struct.Struct("!IH")


@dataclass(frozen=True)
class NeedMoreData:
    """数据不足以解出一条完整记录，调用方需继续读取"""

    needed: int  # 完整记录所需的总字节数（头部不全时为头部长度）
    available: int


def encode_payload(payload: dict[str, Any]) -> bytes:
    """将 payload 对象编码为紧凑的 UTF-8 JSON"""
    try:
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(f"payload 无法序列化为 JSON: {e}", field="payload") from e


def encode_notification(
    token: bytes,
    payload: bytes | dict[str, Any],
    *,
    token_size: int | None = DEVICE_TOKEN_SIZE,
    max_payload_size: int = MAX_PAYLOAD_SIZE,
) -> bytes:
    """
    编码通知帧

    Args:
        token: 设备 token 字节
        payload: 已编码的 JSON 字节或 payload 对象
        token_size: 期望的 token 字节数，None 表示不校验长度
        max_payload_size: payload 最大字节数

    Returns:
        完整的通知帧

    Raises:
        EncodingError: token 长度不符或 payload 超长
    """
    if not token:
        raise EncodingError("token 为空", field="token")
    if token_size is not None and len(token) != token_size:
        raise EncodingError(
            f"token 长度应为 {token_size} 字节，实际 {len(token)} 字节",
            field="token",
            details={"expected": token_size, "actual": len(token)},
        )
    if len(token) > 0xFFFF:
        raise EncodingError("token 过长", field="token")

    body = payload if isinstance(payload, bytes) else encode_payload(payload)
    if len(body) > max_payload_size:
        raise EncodingError(
            f"payload 超出最大长度: {len(body)} > {max_payload_size}",
            field="payload",
            details={"size": len(body), "max": max_payload_size},
        )

    return b"".join((
        _FRAME_HEADER.pack(COMMAND_SIMPLE, len(token)),
        token,
        _LENGTH.pack(len(body)),
        body,
    ))


def decode_notification(frame: bytes) -> tuple[bytes, dict[str, Any]]:
    """
    解析通知帧

    Returns:
        (token 字节, payload 对象)

    Raises:
        EncodingError: 帧格式不合法
    """
    if len(frame) < _FRAME_HEADER.size:
        raise EncodingError("通知帧过短", field="frame")

    command, token_length = _FRAME_HEADER.unpack_from(frame, 0)
    if command != COMMAND_SIMPLE:
        raise EncodingError(f"未知的命令字节: {command}", field="frame")

    offset = _FRAME_HEADER.size
    token = frame[offset:offset + token_length]
    offset += token_length
    if len(token) != token_length or len(frame) < offset + _LENGTH.size:
        raise EncodingError("通知帧 token 不完整", field="frame")

    (payload_length,) = _LENGTH.unpack_from(frame, offset)
    offset += _LENGTH.size
    body = frame[offset:offset + payload_length]
    if len(body) != payload_length or len(frame) != offset + payload_length:
        raise EncodingError("通知帧 payload 长度不符", field="frame")

    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise EncodingError(f"payload 不是合法的 JSON: {e}", field="payload") from e
    return token, payload


def feedback_record_size(data: bytes | bytearray | memoryview) -> int | None:
    """头部完整时返回整条记录的字节数，否则返回 None"""
    if len(data) < FEEDBACK_HEADER.size:
        return None
    _, token_length = FEEDBACK_HEADER.unpack_from(data, 0)
    return FEEDBACK_HEADER.size + token_length


def decode_feedback_record(data: bytes | bytearray | memoryview) -> FeedbackItem | NeedMoreData:
    """
    解码位于 data 开头的一条 Feedback 记录

    传输层是无边界的字节流，数据不足时返回 NeedMoreData 而不是报错。
    """
    size = feedback_record_size(data)
    if size is None:
        return NeedMoreData(needed=FEEDBACK_HEADER.size, available=len(data))
    if len(data) < size:
        return NeedMoreData(needed=size, available=len(data))

    epoch, _ = FEEDBACK_HEADER.unpack_from(data, 0)
    token = bytes(data[FEEDBACK_HEADER.size:size])
    return FeedbackItem.from_wire(epoch, token)


class FeedbackDecoder:
    """
    Feedback 流增量解码器

    按块喂入字节，返回已完整的记录；剩余字节留待下一块。
    """

    def __init__(self):
        self._buffer = bytearray()
        self._count = 0

    @property
    def pending(self) -> int:
        """缓冲区中尚未解码的字节数"""
        return len(self._buffer)

    @property
    def count(self) -> int:
        """已解码的记录数"""
        return self._count

    def feed(self, chunk: bytes) -> list[FeedbackItem]:
        """喂入一块数据，返回其中完整的记录（按流顺序）"""
        self._buffer.extend(chunk)
        items: list[FeedbackItem] = []

        while self._buffer:
            result = decode_feedback_record(self._buffer)
            if isinstance(result, NeedMoreData):
                break
            items.append(result)
            del self._buffer[:feedback_record_size(self._buffer)]

        self._count += len(items)
        return items

    def close(self, strict: bool = False) -> None:
        """
        流结束

        末尾残留的不完整记录与对端正常关闭无法区分，
        默认记录警告后丢弃；strict=True 时抛出 FeedbackDecodeError。
        """
        trailing = len(self._buffer)
        self._buffer.clear()
        if not trailing:
            return

        error = FeedbackDecodeError(
            f"Feedback 流末尾存在不完整记录，丢弃 {trailing} 字节",
            trailing_bytes=trailing,
            details={"decoded": self._count},
        )
        if strict:
            raise error
        logger.warning(error.message)


def decode_feedback_stream(data: bytes, strict: bool = False) -> list[FeedbackItem]:
    """解码一段完整的 Feedback 字节流"""
    decoder = FeedbackDecoder()
    items = decoder.feed(data)
    decoder.close(strict=strict)
    return items
