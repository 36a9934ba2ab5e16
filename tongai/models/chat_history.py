"""问答历史记录模型"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, Text, ForeignKey

from tongai.core.database import Base


class ChatHistory(Base):
    """问答历史（只追加）"""
    __tablename__ = "chat_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    key_code = Column(
        String(100),
        ForeignKey("access_keys.code", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    device_id = Column(String(64), nullable=True, index=True)
    question = Column(Text, nullable=False, default="")
    answer = Column(Text, nullable=False)
    subject = Column(String(50), nullable=False)
    grade_label = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<ChatHistory {self.id} key={self.key_code}>"
