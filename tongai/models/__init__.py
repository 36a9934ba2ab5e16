"""数据模型模块"""

from tongai.models.access_key import AccessKey, ImageAccessKey
from tongai.models.device_session import DeviceSession
from tongai.models.catalog import Subject, Level
from tongai.models.chat_history import ChatHistory
from tongai.models.app_config import AppConfig

__all__ = [
    "AccessKey",
    "ImageAccessKey",
    "DeviceSession",
    "Subject",
    "Level",
    "ChatHistory",
    "AppConfig",
]
