"""系统配置键值表"""

from datetime import datetime

from sqlalchemy import Column, String, DateTime, Text

from tongai.core.database import Base


class AppConfig(Base):
    """app_config - 每个键一行，值统一存字符串"""
    __tablename__ = "app_config"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
