"""
发送引擎模块
"""

from apn_sender.engine.sender import SenderStats, SenderWorker

__all__ = ["SenderWorker", "SenderStats"]
