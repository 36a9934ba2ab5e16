"""设备会话模型"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, ForeignKey, UniqueConstraint

from tongai.core.database import Base


class DeviceSession(Base):
    """(密钥, 设备) 维度的用量与封禁状态"""
    __tablename__ = "device_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    key_code = Column(
        String(100),
        ForeignKey("access_keys.code", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    device_id = Column(String(64), nullable=False, index=True)
    device_info = Column(Text, nullable=True)  # User-Agent
    location = Column(String(255), nullable=True)
    last_seen = Column(DateTime, default=datetime.utcnow, index=True)
    total_tokens = Column(Integer, default=0, nullable=False)
    is_banned = Column(Boolean, default=False, nullable=False)
    last_login_ok = Column(Boolean, default=False, nullable=False)  # 最近一次登录是否成功
    image_key_code = Column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint("key_code", "device_id", name="uq_device_sessions_key_device"),
    )

    @property
    def can_transact(self) -> bool:
        return bool(self.last_login_ok) and not self.is_banned

    def __repr__(self):
        return f"<DeviceSession key={self.key_code} device={self.device_id}>"
