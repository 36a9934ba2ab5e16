"""公开配置 API（无需登录）"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tongai.core.database import get_db
from tongai.services.app_settings import create_app_settings_service
from tongai.services.store import create_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/public", tags=["public"])


class SubjectItem(BaseModel):
    code: str
    label: str
    color: Optional[str] = None
    icon: Optional[str] = None
    background_chars: Optional[str] = None
    char_opacity: Optional[float] = None
    char_size_scale: Optional[float] = None

    class Config:
        from_attributes = True


class LevelItem(BaseModel):
    code: str
    label: str

    class Config:
        from_attributes = True


class PublicConfigResponse(BaseModel):
    app_title: str
    app_logo: Optional[str] = None
    ai_mode: str
    show_usage_to_user: bool
    subjects: List[SubjectItem]
    levels: List[LevelItem]


@router.get("/config", response_model=PublicConfigResponse)
async def get_public_config(db: AsyncSession = Depends(get_db)):
    """
    首页配置：标题、Logo、AI 模式、学科与年级

    学科或年级读取失败时返回空列表，前端使用内置的旧版学科。
    """
    store = create_store(db)
    config = await create_app_settings_service(store).public_config()

    try:
        subjects = await store.list_subjects(active_only=True)
        levels = await store.list_levels(active_only=True)
    except Exception as e:
        logger.warning(f"Failed to load subjects/levels, falling back to built-in ones: {e}")
        await db.rollback()
        subjects, levels = [], []

    return PublicConfigResponse(
        **config,
        subjects=[SubjectItem.model_validate(s) for s in subjects],
        levels=[LevelItem.model_validate(level) for level in levels],
    )
