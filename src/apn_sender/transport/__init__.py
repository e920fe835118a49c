"""
传输层模块

- codec：通知帧与 Feedback 记录的二进制编解码
- endpoints：正式/沙箱地址解析
- tls：凭证包与 TLS 连接
- connection：单连接管理（写入失败重连重发一次）
"""

from apn_sender.transport.codec import (
    COMMAND_SIMPLE,
    DEVICE_TOKEN_SIZE,
    MAX_PAYLOAD_SIZE,
    FeedbackDecoder,
    NeedMoreData,
    decode_feedback_record,
    decode_feedback_stream,
    decode_notification,
    encode_notification,
    encode_payload,
)
from apn_sender.transport.connection import ConnectionManager, ConnectionStats
from apn_sender.transport.endpoints import (
    FEEDBACK_ENDPOINTS,
    GATEWAY_ENDPOINTS,
    Endpoint,
    feedback_endpoint,
    gateway_endpoint,
)
from apn_sender.transport.tls import CredentialBundle, create_client_ssl_context, open_tls_stream

__all__ = [
    # 编解码
    "COMMAND_SIMPLE",
    "DEVICE_TOKEN_SIZE",
    "MAX_PAYLOAD_SIZE",
    "NeedMoreData",
    "FeedbackDecoder",
    "encode_payload",
    "encode_notification",
    "decode_notification",
    "decode_feedback_record",
    "decode_feedback_stream",
    # 地址
    "Endpoint",
    "GATEWAY_ENDPOINTS",
    "FEEDBACK_ENDPOINTS",
    "gateway_endpoint",
    "feedback_endpoint",
    # TLS
    "CredentialBundle",
    "create_client_ssl_context",
    "open_tls_stream",
    # 连接
    "ConnectionManager",
    "ConnectionStats",
]
