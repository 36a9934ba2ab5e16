"""配置存储服务

所有持久化状态（密钥、设备会话、学科、年级、历史记录、系统配置）只通过这里的方法读写。
调用方把它当作远程存储的 RPC 接口使用：

- login_with_key / verify_image_key：准入判断与设备会话登记
- increment_token_usage / increment_image_usage：用量累计，超额自动停用
- add_chat_message / fetch_chat_history：问答历史
- get_config_value / update_config_value：app_config 键值读写
- 其余为管理后台使用的增删改查

配额规则由存储自身负责：累计用量 >= 限额时在同一次写入中把密钥置为停用。
已停用的密钥或已封禁的设备上报的用量会被静默忽略，调用方不会收到异常。
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from tongai.models import (
    AccessKey,
    AppConfig,
    ChatHistory,
    DeviceSession,
    ImageAccessKey,
    Level,
    Subject,
)

logger = logging.getLogger(__name__)

CHAT_HISTORY_LIMIT = 50
ADMIN_HISTORY_LIMIT = 100

SUBJECT_FIELDS = (
    "label",
    "color",
    "icon",
    "prompt_prefix",
    "background_chars",
    "char_opacity",
    "char_size_scale",
    "is_active",
    "sort_order",
)
LEVEL_FIELDS = ("label", "sort_order", "is_active")


class StoreError(Exception):
    """存储层错误基类"""
    pass


class RecordNotFoundError(StoreError):
    """记录不存在"""
    pass


class DuplicateCodeError(StoreError):
    """编码重复"""
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Code {code} already exists")


class OverQuotaReactivationError(StoreError):
    """尝试启用一个仍然超额的密钥"""
    def __init__(self, code: str, used: int, limit: int):
        self.code = code
        self.used = used
        self.limit = limit
        super().__init__(
            f"Key {code} is over its limit ({used}/{limit}) and would be disabled again"
        )


class ConfigurationStore:
    """配置存储（RPC 风格接口）"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========================================================================
    # 查询辅助
    # ========================================================================

    async def get_access_key(self, code: str) -> Optional[AccessKey]:
        result = await self.db.execute(select(AccessKey).where(AccessKey.code == code))
        return result.scalar_one_or_none()

    async def get_image_key(self, code: str) -> Optional[ImageAccessKey]:
        result = await self.db.execute(
            select(ImageAccessKey).where(ImageAccessKey.code == code)
        )
        return result.scalar_one_or_none()

    async def get_device_session(
        self, key_code: str, device_id: str
    ) -> Optional[DeviceSession]:
        result = await self.db.execute(
            select(DeviceSession).where(
                DeviceSession.key_code == key_code,
                DeviceSession.device_id == device_id,
            )
        )
        return result.scalar_one_or_none()

    # ========================================================================
    # 准入
    # ========================================================================

    async def login_with_key(
        self,
        code: str,
        device_id: str,
        user_agent: Optional[str],
        location: Optional[str] = None,
    ) -> bool:
        """
        使用访问密钥登录

        只要密钥存在就登记（或刷新）设备会话；仅当密钥有效且设备未被封禁时返回 True。
        结果记在 last_login_ok 上，解题接口只放行最近一次登录成功的设备。
        """
        key = await self.get_access_key(code)
        if not key:
            return False

        session = await self.get_device_session(code, device_id)
        if not session:
            session = DeviceSession(
                key_code=code,
                device_id=device_id,
                total_tokens=0,
                is_banned=False,
                last_login_ok=False,
            )
            self.db.add(session)

        session.device_info = user_agent
        if location:
            session.location = location
        session.last_seen = datetime.utcnow()

        allowed = bool(key.is_active) and not session.is_banned
        session.last_login_ok = allowed
        await self.db.commit()
        return allowed

    async def verify_image_key(
        self, image_code: str, main_code: str, device_id: str
    ) -> bool:
        """
        校验图片密钥并关联到当前设备会话

        图片密钥必须有效且未超额；主密钥必须有效，且设备已用它成功登录、未被封禁。
        不会为未登录的设备创建会话。
        """
        image_key = await self.get_image_key(image_code)
        if not image_key or not image_key.is_active or image_key.is_over_quota:
            return False

        main_key = await self.get_access_key(main_code)
        if not main_key or not main_key.is_active:
            return False

        session = await self.get_device_session(main_code, device_id)
        if not session or not session.can_transact:
            return False

        session.image_key_code = image_code
        session.last_seen = datetime.utcnow()
        await self.db.commit()
        return True

    # ========================================================================
    # 用量
    # ========================================================================

    async def increment_token_usage(self, code: str, device_id: str, amount: int) -> None:
        """累计 Token 用量；超额时停用密钥"""
        if amount <= 0:
            return

        key = await self.get_access_key(code)
        session = await self.get_device_session(code, device_id)
        if not key or not key.is_active or not session or not session.can_transact:
            logger.info(
                f"Ignored token usage for key={code} device={device_id}: not allowed to transact"
            )
            return

        await self.db.execute(
            update(AccessKey)
            .where(AccessKey.code == code)
            .values(total_tokens=AccessKey.total_tokens + amount)
        )
        await self.db.execute(
            update(DeviceSession)
            .where(DeviceSession.id == session.id)
            .values(total_tokens=DeviceSession.total_tokens + amount)
        )
        # 超额自动停用（>= 即视为超额）
        banned = await self.db.execute(
            update(AccessKey)
            .where(
                AccessKey.code == code,
                AccessKey.token_limit.is_not(None),
                AccessKey.total_tokens >= AccessKey.token_limit,
                AccessKey.is_active.is_(True),
            )
            .values(is_active=False)
        )
        await self.db.commit()

        if banned.rowcount:
            logger.warning(f"Access key {code} reached its token limit and was disabled")

    async def increment_image_usage(self, image_code: str) -> None:
        """累计图片用量；超额时停用图片密钥"""
        image_key = await self.get_image_key(image_code)
        if not image_key or not image_key.is_active:
            logger.info(f"Ignored image usage for image key={image_code}: not active")
            return

        await self.db.execute(
            update(ImageAccessKey)
            .where(ImageAccessKey.code == image_code)
            .values(total_images=ImageAccessKey.total_images + 1)
        )
        banned = await self.db.execute(
            update(ImageAccessKey)
            .where(
                ImageAccessKey.code == image_code,
                ImageAccessKey.image_limit.is_not(None),
                ImageAccessKey.total_images >= ImageAccessKey.image_limit,
                ImageAccessKey.is_active.is_(True),
            )
            .values(is_active=False)
        )
        await self.db.commit()

        if banned.rowcount:
            logger.warning(f"Image key {image_code} reached its image limit and was disabled")

    # ========================================================================
    # 历史记录
    # ========================================================================

    async def add_chat_message(
        self,
        key_code: str,
        question: str,
        answer: str,
        subject: str,
        grade_label: Optional[str],
        device_id: Optional[str],
    ) -> None:
        """追加一条问答记录；设备会话不存在、被封禁或登录未成功时忽略"""
        if not await self.get_access_key(key_code):
            logger.info(f"Ignored chat message for unknown key={key_code}")
            return

        if device_id is not None:
            session = await self.get_device_session(key_code, device_id)
            if not session or not session.can_transact:
                logger.info(f"Ignored chat message for key={key_code} device={device_id}: not allowed")
                return

        self.db.add(ChatHistory(
            key_code=key_code,
            device_id=device_id,
            question=question,
            answer=answer,
            subject=subject,
            grade_label=grade_label or None,
            created_at=datetime.utcnow(),
        ))
        await self.db.commit()

    async def fetch_chat_history(
        self, key_code: str, limit: int = CHAT_HISTORY_LIMIT
    ) -> List[ChatHistory]:
        """按时间倒序获取某密钥的历史（最多 50 条）"""
        result = await self.db.execute(
            select(ChatHistory)
            .where(ChatHistory.key_code == key_code)
            .order_by(ChatHistory.created_at.desc())
            .limit(min(limit, CHAT_HISTORY_LIMIT))
        )
        return list(result.scalars().all())

    async def fetch_admin_history(
        self, filter_type: str, value: str, limit: int = ADMIN_HISTORY_LIMIT
    ) -> List[ChatHistory]:
        """管理后台按密钥或设备筛选历史"""
        query = (
            select(ChatHistory)
            .order_by(ChatHistory.created_at.desc())
            .limit(min(limit, ADMIN_HISTORY_LIMIT))
        )
        if filter_type == "key":
            query = query.where(ChatHistory.key_code == value)
        elif filter_type == "device":
            query = query.where(ChatHistory.device_id == value)
        else:
            raise ValueError(f"Unknown history filter: {filter_type}")

        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ========================================================================
    # 系统配置
    # ========================================================================

    async def get_config_value(self, key: str) -> Optional[str]:
        result = await self.db.execute(select(AppConfig.value).where(AppConfig.key == key))
        return result.scalar_one_or_none()

    async def get_config_values(self, keys: Iterable[str]) -> Dict[str, str]:
        """批量读取，缺失的键不出现在结果中"""
        result = await self.db.execute(
            select(AppConfig.key, AppConfig.value).where(AppConfig.key.in_(list(keys)))
        )
        return {row.key: row.value for row in result.all()}

    async def update_config_value(self, key: str, value: str) -> str:
        result = await self.db.execute(select(AppConfig).where(AppConfig.key == key))
        config = result.scalar_one_or_none()
        if config:
            config.value = value
            config.updated_at = datetime.utcnow()
        else:
            self.db.add(AppConfig(key=key, value=value, updated_at=datetime.utcnow()))
        await self.db.commit()
        return value

    # ========================================================================
    # 管理：主密钥
    # ========================================================================

    async def list_access_keys(self) -> List[Tuple[AccessKey, int]]:
        """所有主密钥及其设备数，按创建时间倒序"""
        device_counts = (
            select(DeviceSession.key_code, func.count(DeviceSession.id).label("device_count"))
            .group_by(DeviceSession.key_code)
            .subquery()
        )
        result = await self.db.execute(
            select(AccessKey, func.coalesce(device_counts.c.device_count, 0))
            .outerjoin(device_counts, device_counts.c.key_code == AccessKey.code)
            .order_by(AccessKey.created_at.desc())
        )
        return [(key, count) for key, count in result.all()]

    async def create_access_key(
        self, code: str, note: Optional[str] = None, token_limit: Optional[int] = None
    ) -> AccessKey:
        if await self.get_access_key(code):
            raise DuplicateCodeError(code)

        key = AccessKey(
            code=code,
            note=note,
            is_active=True,
            total_tokens=0,
            token_limit=token_limit,
            created_at=datetime.utcnow(),
        )
        self.db.add(key)
        await self.db.commit()
        await self.db.refresh(key)
        return key

    async def _get_access_key_by_id(self, key_id: str) -> AccessKey:
        result = await self.db.execute(select(AccessKey).where(AccessKey.id == key_id))
        key = result.scalar_one_or_none()
        if not key:
            raise RecordNotFoundError(f"Access key {key_id} not found")
        return key

    async def set_access_key_active(
        self, key_id: str, is_active: bool, force: bool = False
    ) -> AccessKey:
        """
        启用/停用主密钥

        启用一个仍然超额的密钥时必须显式 force，否则下一次用量上报会再次停用它。
        """
        key = await self._get_access_key_by_id(key_id)
        if is_active and not key.is_active and key.is_over_quota and not force:
            raise OverQuotaReactivationError(key.code, key.total_tokens, key.token_limit)

        key.is_active = is_active
        await self.db.commit()
        await self.db.refresh(key)
        return key

    async def update_access_key_limit(self, key_id: str, token_limit: Optional[int]) -> AccessKey:
        key = await self._get_access_key_by_id(key_id)
        key.token_limit = token_limit
        await self.db.commit()
        await self.db.refresh(key)
        return key

    async def delete_access_key(self, key_id: str) -> None:
        """删除主密钥，同时删除其设备会话和历史"""
        code = (await self._get_access_key_by_id(key_id)).code

        await self.db.execute(delete(ChatHistory).where(ChatHistory.key_code == code))
        await self.db.execute(delete(DeviceSession).where(DeviceSession.key_code == code))
        await self.db.execute(delete(AccessKey).where(AccessKey.code == code))
        await self.db.commit()

    # ========================================================================
    # 管理：图片密钥
    # ========================================================================

    async def list_image_keys(self) -> List[ImageAccessKey]:
        result = await self.db.execute(
            select(ImageAccessKey).order_by(ImageAccessKey.created_at.desc())
        )
        return list(result.scalars().all())

    async def create_image_key(
        self, code: str, note: Optional[str] = None, image_limit: Optional[int] = None
    ) -> ImageAccessKey:
        if await self.get_image_key(code):
            raise DuplicateCodeError(code)

        image_key = ImageAccessKey(
            code=code,
            note=note,
            is_active=True,
            total_images=0,
            image_limit=image_limit,
            created_at=datetime.utcnow(),
        )
        self.db.add(image_key)
        await self.db.commit()
        await self.db.refresh(image_key)
        return image_key

    async def _get_image_key_by_id(self, key_id: str) -> ImageAccessKey:
        result = await self.db.execute(select(ImageAccessKey).where(ImageAccessKey.id == key_id))
        image_key = result.scalar_one_or_none()
        if not image_key:
            raise RecordNotFoundError(f"Image key {key_id} not found")
        return image_key

    async def set_image_key_active(
        self, key_id: str, is_active: bool, force: bool = False
    ) -> ImageAccessKey:
        image_key = await self._get_image_key_by_id(key_id)
        if is_active and not image_key.is_active and image_key.is_over_quota and not force:
            raise OverQuotaReactivationError(
                image_key.code, image_key.total_images, image_key.image_limit
            )

        image_key.is_active = is_active
        await self.db.commit()
        await self.db.refresh(image_key)
        return image_key

    async def update_image_key_limit(
        self, key_id: str, image_limit: Optional[int]
    ) -> ImageAccessKey:
        image_key = await self._get_image_key_by_id(key_id)
        image_key.image_limit = image_limit
        await self.db.commit()
        await self.db.refresh(image_key)
        return image_key

    async def delete_image_key(self, key_id: str) -> None:
        """删除图片密钥并解除所有设备上的关联"""
        code = (await self._get_image_key_by_id(key_id)).code

        await self.db.execute(
            update(DeviceSession)
            .where(DeviceSession.image_key_code == code)
            .values(image_key_code=None)
        )
        await self.db.execute(delete(ImageAccessKey).where(ImageAccessKey.code == code))
        await self.db.commit()

    # ========================================================================
    # 管理：设备
    # ========================================================================

    async def list_device_sessions(self) -> List[DeviceSession]:
        result = await self.db.execute(
            select(DeviceSession).order_by(DeviceSession.last_seen.desc())
        )
        return list(result.scalars().all())

    async def set_device_ban(self, key_code: str, device_id: str, is_banned: bool) -> DeviceSession:
        session = await self.get_device_session(key_code, device_id)
        if not session:
            raise RecordNotFoundError(f"Device session {key_code}/{device_id} not found")

        session.is_banned = is_banned
        await self.db.commit()
        await self.db.refresh(session)
        return session

    # ========================================================================
    # 管理：学科
    # ========================================================================

    async def list_subjects(self, active_only: bool = False) -> List[Subject]:
        query = select(Subject).order_by(Subject.sort_order, Subject.code)
        if active_only:
            query = query.where(Subject.is_active.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_subject(self, code: str) -> Optional[Subject]:
        result = await self.db.execute(select(Subject).where(Subject.code == code))
        return result.scalar_one_or_none()

    async def create_subject(self, code: str, label: str, **fields: Any) -> Subject:
        if await self.get_subject(code):
            raise DuplicateCodeError(code)

        subject = Subject(code=code, label=label)
        for name in SUBJECT_FIELDS:
            if fields.get(name) is not None:
                setattr(subject, name, fields[name])
        self.db.add(subject)
        await self.db.commit()
        await self.db.refresh(subject)
        return subject

    async def update_subject(self, code: str, updates: Dict[str, Any]) -> Subject:
        """更新学科，code 是主键不可修改"""
        subject = await self.get_subject(code)
        if not subject:
            raise RecordNotFoundError(f"Subject {code} not found")

        for name, value in updates.items():
            if name in SUBJECT_FIELDS and value is not None:
                setattr(subject, name, value)
        await self.db.commit()
        await self.db.refresh(subject)
        return subject

    async def delete_subject(self, code: str) -> None:
        if not await self.get_subject(code):
            raise RecordNotFoundError(f"Subject {code} not found")
        await self.db.execute(delete(Subject).where(Subject.code == code))
        await self.db.commit()

    # ========================================================================
    # 管理：年级
    # ========================================================================

    async def list_levels(self, active_only: bool = False) -> List[Level]:
        query = select(Level).order_by(Level.sort_order, Level.code)
        if active_only:
            query = query.where(Level.is_active.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_level(self, code: str) -> Optional[Level]:
        result = await self.db.execute(select(Level).where(Level.code == code))
        return result.scalar_one_or_none()

    async def create_level(
        self, code: str, label: str, sort_order: int = 0, is_active: bool = True
    ) -> Level:
        if await self.get_level(code):
            raise DuplicateCodeError(code)

        level = Level(code=code, label=label, sort_order=sort_order, is_active=is_active)
        self.db.add(level)
        await self.db.commit()
        await self.db.refresh(level)
        return level

    async def update_level(self, code: str, updates: Dict[str, Any]) -> Level:
        level = await self.get_level(code)
        if not level:
            raise RecordNotFoundError(f"Level {code} not found")

        for name, value in updates.items():
            if name in LEVEL_FIELDS and value is not None:
                setattr(level, name, value)
        await self.db.commit()
        await self.db.refresh(level)
        return level

    async def delete_level(self, code: str) -> None:
        if not await self.get_level(code):
            raise RecordNotFoundError(f"Level {code} not found")
        await self.db.execute(delete(Level).where(Level.code == code))
        await self.db.commit()


def create_store(db: AsyncSession) -> ConfigurationStore:
    """创建存储服务实例"""
    return ConfigurationStore(db=db)
