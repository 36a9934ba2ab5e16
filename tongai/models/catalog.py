"""学科与年级（等级）配置模型"""

from datetime import datetime

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Float, Text

from tongai.core.database import Base


class Subject(Base):
    """学科 - 同时驱动提示词前缀和前端展示"""
    __tablename__ = "subjects"

    code = Column(String(50), primary_key=True)  # 创建后不可修改
    label = Column(String(100), nullable=False)
    color = Column(String(30), default="indigo")
    icon = Column(String(30), default="book")
    prompt_prefix = Column(Text, nullable=True)
    background_chars = Column(Text, nullable=True)  # 背景粒子字符
    char_opacity = Column(Float, default=0.15)
    char_size_scale = Column(Float, default=1.0)
    is_active = Column(Boolean, default=True)
    sort_order = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


class Level(Base):
    """年级 - 仅作为提示词中的自然语言后缀"""
    __tablename__ = "levels"

    code = Column(String(50), primary_key=True)
    label = Column(String(100), nullable=False)
    sort_order = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
