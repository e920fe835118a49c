"""日志配置模块

提供日志初始化、格式化和敏感信息脱敏功能。
设备 token 属于用户标识，日志中只保留前 8 位。
"""

import os
import re
import sys
from typing import Any

from loguru import logger

# 日志格式
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"

# 敏感字段模式（用于脱敏）
SENSITIVE_PATTERNS = [
    # 设备 token（连续 32 位以上十六进制）
    (re.compile(r"\b([0-9a-fA-F]{8})[0-9a-fA-F]{24,}\b"), r"\1…"),
    # 证书口令
    (
        re.compile(
            r'(passphrase|password|passwd)["\']?\s*[:=]\s*["\']?([^"\'\s,}]{3,})["\']?',
            re.IGNORECASE,
        ),
        r"\1=***REDACTED***",
    ),
    # 含密码的 Redis URL
    (re.compile(r"(redis|rediss)://([^:/@]*):([^@]+)@", re.IGNORECASE), r"\1://\2:***@"),
]


def sanitize_log_message(message: str) -> str:
    """对日志消息进行敏感信息脱敏"""
    if not message:
        return message

    sanitized = message
    for pattern, replacement in SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)

    return sanitized


class SanitizingFilter:
    """日志脱敏过滤器"""

    def __call__(self, record: dict[str, Any]) -> bool:
        if "message" in record:
            record["message"] = sanitize_log_message(record["message"])
        return True


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """初始化日志系统，包含敏感信息脱敏

    Args:
        level: 日志级别
        log_file: 日志文件路径，为空时只输出到控制台
    """
    logger.remove()

    sanitizing_filter = SanitizingFilter()

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level,
        colorize=True,
        filter=sanitizing_filter,
    )

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        logger.add(
            log_file,
            format=FILE_FORMAT,
            level=level,
            rotation="100 MB",
            retention="14 days",
            compression="zip",
            encoding="utf-8",
            enqueue=True,
            filter=sanitizing_filter,
        )

    logger.info(f"日志初始化完成: level={level}, file={log_file or '-'}")
