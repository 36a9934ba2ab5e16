"""访问密钥模型：主密钥与图片密钥"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text

from tongai.core.database import Base


class AccessKey(Base):
    """主访问密钥 - 按 Token 计量"""
    __tablename__ = "access_keys"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    code = Column(String(100), unique=True, nullable=False, index=True)
    note = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    total_tokens = Column(Integer, default=0, nullable=False)
    token_limit = Column(Integer, nullable=True)  # NULL 表示不限量
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    @property
    def is_over_quota(self) -> bool:
        return self.token_limit is not None and self.total_tokens >= self.token_limit

    def __repr__(self):
        return f"<AccessKey {self.code}>"


class ImageAccessKey(Base):
    """图片密钥 - 按图片张数计量"""
    __tablename__ = "image_access_keys"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    code = Column(String(100), unique=True, nullable=False, index=True)
    note = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    total_images = Column(Integer, default=0, nullable=False)
    image_limit = Column(Integer, nullable=True)  # NULL 表示不限量
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    @property
    def is_over_quota(self) -> bool:
        return self.image_limit is not None and self.total_images >= self.image_limit

    def __repr__(self):
        return f"<ImageAccessKey {self.code}>"
