"""
二进制编解码测试

测试通知帧与 Feedback 记录：
- 通知帧编码/解析
- payload 长度限制
- Feedback 流增量解码与残留处理
"""

import struct
from datetime import UTC, datetime

import pytest

from apn_sender.domain.errors import EncodingError, FeedbackDecodeError
from apn_sender.domain.models import FeedbackItem, Notification
from apn_sender.transport.codec import (
    COMMAND_SIMPLE,
    MAX_PAYLOAD_SIZE,
    FeedbackDecoder,
    NeedMoreData,
    decode_feedback_record,
    decode_feedback_stream,
    decode_notification,
    encode_notification,
    encode_payload,
)

TOKEN_HEX = "a1b2c3d4e5f60718293a4b5c6d7e8f90"


def feedback_record(epoch: int, token: bytes) -> bytes:
    return struct.pack("!IH", epoch, len(token)) + token


class TestEncodeNotification:
    """通知帧编码测试"""

    def test_alert_badge_frame(self):
        """测试 alert + badge 的完整帧布局"""
        notification = Notification(token=TOKEN_HEX, alert="Hi", badge=3)
        frame = encode_notification(
            notification.token_bytes, notification.payload(), token_size=16
        )

        payload = b'{"aps":{"alert":"Hi","badge":3}}'
        assert frame[0] == COMMAND_SIMPLE
        assert frame[1:3] == b"\x00\x10"
        assert frame[3:19] == bytes.fromhex(TOKEN_HEX)
        assert frame[19:21] == struct.pack("!H", len(payload))
        assert frame[21:] == payload
        assert len(frame) == 1 + 2 + 16 + 2 + len(payload)

    def test_round_trip(self):
        """测试编码后可解析回原 token 与 payload"""
        token = bytes(range(32))
        payload = {"aps": {"alert": {"body": "你好"}, "sound": "default"}, "order_id": 42}

        decoded_token, decoded_payload = decode_notification(encode_notification(token, payload))

        assert decoded_token == token
        assert decoded_payload == payload

    def test_payload_is_compact_utf8(self):
        """测试 payload 为紧凑 JSON 且不转义非 ASCII 字符"""
        assert encode_payload({"aps": {"alert": "é"}}) == '{"aps":{"alert":"é"}}'.encode()

    def test_accepts_pre_encoded_payload(self):
        """测试已编码的 payload 原样写入"""
        frame = encode_notification(bytes(32), b"{}")
        assert frame.endswith(b"\x00\x02{}")

    def test_payload_at_limit(self):
        """测试恰好等于上限的 payload 可以编码"""
        body = b"x" * MAX_PAYLOAD_SIZE
        frame = encode_notification(bytes(32), body)
        assert len(frame) == 1 + 2 + 32 + 2 + MAX_PAYLOAD_SIZE

    def test_oversize_payload(self):
        """测试超长 payload 抛出 EncodingError"""
        with pytest.raises(EncodingError) as exc_info:
            encode_notification(bytes(32), {"aps": {"alert": "x" * 300}})

        assert exc_info.value.field == "payload"
        assert exc_info.value.details["max"] == MAX_PAYLOAD_SIZE

    def test_custom_payload_limit(self):
        """测试可配置的 payload 上限"""
        with pytest.raises(EncodingError):
            encode_notification(bytes(32), b"x" * 11, max_payload_size=10)

    def test_wrong_token_size(self):
        """测试 token 长度不符"""
        with pytest.raises(EncodingError) as exc_info:
            encode_notification(bytes(16), {"aps": {}})

        assert exc_info.value.details == {"expected": 32, "actual": 16}

    def test_token_size_check_disabled(self):
        """测试 token_size=None 时不校验长度"""
        frame = encode_notification(bytes(8), b"{}", token_size=None)
        assert frame[1:3] == b"\x00\x08"

    def test_empty_token(self):
        """测试空 token"""
        with pytest.raises(EncodingError):
            encode_notification(b"", {"aps": {}})

    def test_unserializable_payload(self):
        """测试无法序列化的 payload"""
        with pytest.raises(EncodingError):
            encode_payload({"aps": {}, "when": datetime.now()})


class TestDecodeNotification:
    """通知帧解析测试"""

    def test_unknown_command(self):
        """测试未知命令字节"""
        frame = bytearray(encode_notification(bytes(32), b"{}"))
        frame[0] = 2
        with pytest.raises(EncodingError):
            decode_notification(bytes(frame))

    def test_truncated_frame(self):
        """测试截断的帧"""
        frame = encode_notification(bytes(32), b'{"aps":{}}')
        with pytest.raises(EncodingError):
            decode_notification(frame[:-1])

    def test_too_short(self):
        """测试不足头部长度"""
        with pytest.raises(EncodingError):
            decode_notification(b"\x01")


class TestFeedbackRecord:
    """Feedback 记录解码测试"""

    def test_single_record(self):
        """测试 00000064 0002 ABCD"""
        item = decode_feedback_record(bytes.fromhex("000000640002ABCD"))

        assert item == FeedbackItem(
            timestamp=datetime(1970, 1, 1, 0, 1, 40, tzinfo=UTC), token="abcd"
        )
        assert item.epoch == 100
        assert str(item) == "abcd"

    def test_header_incomplete(self):
        """测试头部不足 6 字节"""
        result = decode_feedback_record(b"\x00\x00\x00")
        assert result == NeedMoreData(needed=6, available=3)

    def test_token_incomplete(self):
        """测试 token 不完整"""
        result = decode_feedback_record(feedback_record(1, bytes(32))[:20])
        assert result == NeedMoreData(needed=38, available=20)

    def test_only_first_record_consumed(self):
        """测试只解码开头的一条记录"""
        data = feedback_record(1, b"\x01") + feedback_record(2, b"\x02")
        item = decode_feedback_record(data)
        assert item.token == "01"
        assert item.epoch == 1


class TestFeedbackDecoder:
    """Feedback 流解码测试"""

    def test_records_in_order(self):
        """测试 K 条记录按顺序解码"""
        tokens = [bytes([i]) * 32 for i in range(5)]
        data = b"".join(feedback_record(1000 + i, t) for i, t in enumerate(tokens))

        items = decode_feedback_stream(data)

        assert [item.token for item in items] == [t.hex() for t in tokens]
        assert [item.epoch for item in items] == [1000, 1001, 1002, 1003, 1004]

    def test_records_split_across_chunks(self):
        """测试记录跨块拆分"""
        data = feedback_record(7, bytes(32)) + feedback_record(8, b"\xff" * 32)
        decoder = FeedbackDecoder()

        items = []
        for i in range(0, len(data), 5):
            items.extend(decoder.feed(data[i:i + 5]))
        decoder.close(strict=True)

        assert [item.epoch for item in items] == [7, 8]
        assert decoder.count == 2
        assert decoder.pending == 0

    def test_partial_trailing_record_dropped(self):
        """测试末尾不完整记录被丢弃且不抛异常"""
        data = feedback_record(100, b"\xab\xcd") + feedback_record(200, bytes(32))[:10]

        items = decode_feedback_stream(data)

        assert [item.token for item in items] == ["abcd"]

    def test_partial_trailing_record_strict(self):
        """测试 strict 模式下残留字节抛出 FeedbackDecodeError"""
        decoder = FeedbackDecoder()
        decoder.feed(feedback_record(100, b"\xab\xcd") + b"\x00\x00")

        with pytest.raises(FeedbackDecodeError) as exc_info:
            decoder.close(strict=True)

        assert exc_info.value.trailing_bytes == 2
        assert exc_info.value.details == {"decoded": 1}

    def test_empty_stream(self):
        """测试空流"""
        assert decode_feedback_stream(b"") == []

    def test_zero_length_token(self):
        """测试 token 长度为 0 的记录"""
        items = decode_feedback_stream(feedback_record(5, b""))
        assert len(items) == 1
        assert items[0].token == ""
