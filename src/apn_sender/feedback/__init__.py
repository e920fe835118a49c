"""
Feedback 模块
"""

from apn_sender.feedback.client import FeedbackClient

__all__ = ["FeedbackClient"]
