"""
通用服务
"""

from apn_sender.services.resilience import BackoffConfig, ExponentialBackoff

__all__ = ["BackoffConfig", "ExponentialBackoff"]
