"""
地址解析与 TLS 会话测试
"""

import asyncio
import socket
import ssl
from unittest.mock import AsyncMock, patch

import pytest

from apn_sender.domain import errors
from apn_sender.domain.enums import Environment
from apn_sender.transport.endpoints import Endpoint, feedback_endpoint, gateway_endpoint
from apn_sender.transport.tls import CredentialBundle, create_client_ssl_context, open_tls_stream


class TestEndpoints:
    """地址解析测试"""

    def test_gateway(self):
        assert gateway_endpoint(Environment.PRODUCTION) == Endpoint("gateway.push.apple.com", 2195)
        assert gateway_endpoint("sandbox") == Endpoint("gateway.sandbox.push.apple.com", 2195)

    def test_feedback(self):
        assert feedback_endpoint(":production") == Endpoint("feedback.push.apple.com", 2196)
        assert feedback_endpoint("development") == Endpoint("feedback.sandbox.push.apple.com", 2196)

    def test_override(self):
        """测试 host/port 覆盖"""
        assert gateway_endpoint("sandbox", "127.0.0.1", 12195) == Endpoint("127.0.0.1", 12195)
        assert str(gateway_endpoint("sandbox", port=1)) == "gateway.sandbox.push.apple.com:1"

    def test_missing_environment(self):
        with pytest.raises(errors.ConfigError):
            gateway_endpoint("")


class TestSSLContext:
    """SSL 上下文测试"""

    def test_missing_cert(self, tmp_path):
        """测试证书不存在"""
        with pytest.raises(errors.ConfigError) as exc_info:
            create_client_ssl_context(CredentialBundle(cert_path=str(tmp_path / "missing.pem")))
        assert exc_info.value.config_key == "cert_path"

    def test_missing_key(self, tmp_path):
        """测试私钥不存在"""
        cert = tmp_path / "apn.pem"
        cert.write_text("placeholder")
        with pytest.raises(errors.ConfigError) as exc_info:
            create_client_ssl_context(
                CredentialBundle(cert_path=str(cert), key_path=str(tmp_path / "missing.key"))
            )
        assert exc_info.value.config_key == "key_path"

    def test_invalid_cert(self, tmp_path):
        """测试证书内容无法加载"""
        cert = tmp_path / "apn.pem"
        cert.write_text("not a certificate")
        with pytest.raises(errors.ConfigError):
            create_client_ssl_context(CredentialBundle(cert_path=str(cert)))


class TestOpenTLSStream:
    """TLS 连接错误映射测试"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("raised", "reason"),
        [
            (ssl.SSLError("handshake failure"), "auth"),
            (socket.gaierror("Name or service not known"), "dns"),
            (TimeoutError(), "timeout"),
            (ConnectionRefusedError("refused"), "network"),
        ],
    )
    async def test_error_mapping(self, raised, reason):
        endpoint = Endpoint("gateway.sandbox.push.apple.com", 2195)
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)

        with patch("asyncio.open_connection", AsyncMock(side_effect=raised)):
            with pytest.raises(errors.ConnectionError) as exc_info:
                await open_tls_stream(endpoint, context, timeout=1.0)

        assert exc_info.value.details["reason"] == reason
        assert exc_info.value.host == "gateway.sandbox.push.apple.com"
        assert exc_info.value.port == 2195

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        """测试连接超时"""

        async def never_connects(*args, **kwargs):
            await asyncio.Event().wait()

        with patch("asyncio.open_connection", never_connects):
            with pytest.raises(errors.ConnectionError) as exc_info:
                await open_tls_stream(
                    Endpoint("gateway.push.apple.com", 2195),
                    ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT),
                    timeout=0.05,
                )

        assert exc_info.value.details["reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_passes_server_hostname(self):
        """测试连接时使用 SNI 主机名"""
        streams = (object(), object())
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        open_connection = AsyncMock(return_value=streams)

        with patch("asyncio.open_connection", open_connection):
            result = await open_tls_stream(Endpoint("feedback.push.apple.com", 2196), context)

        assert result == streams
        open_connection.assert_awaited_once_with(
            "feedback.push.apple.com", 2196, ssl=context, server_hostname="feedback.push.apple.com"
        )
