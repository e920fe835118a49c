"""
应用层

- Application：启动/关闭流程
- GracefulShutdown：信号处理
- Container：组件组装
"""

from apn_sender.app.main import Application, GracefulShutdown, run_sender
from apn_sender.app.wiring import Container, create_container

__all__ = [
    "Application",
    "GracefulShutdown",
    "run_sender",
    "Container",
    "create_container",
]
