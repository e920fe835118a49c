"""
单元测试公共夹具
"""

import ssl

import pytest

from apn_sender.services.resilience import BackoffConfig
from apn_sender.transport.tls import CredentialBundle


@pytest.fixture
def credentials():
    return CredentialBundle(cert_path="/nonexistent/apn.pem")


@pytest.fixture
def ssl_context():
    """不加载证书的占位上下文，FakeOpener 不会使用它"""
    return ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)


@pytest.fixture
def no_backoff():
    return BackoffConfig(base_delay=0.0, max_delay=0.0, jitter=0.0)
