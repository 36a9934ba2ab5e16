"""会话与密钥准入

每个 (密钥, 设备) 的状态保存在存储中，这里只根据 RPC 返回值观察状态：

    UNREGISTERED -> ACTIVE -> OVER_QUOTA（超额自动停用）
                           -> BANNED（设备被管理员封禁）
                           -> DISABLED（密钥被管理员停用）
    密钥删除后重新观察为 UNREGISTERED
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional
from uuid import uuid4

from tongai.models import DeviceSession
from tongai.services.store import ConfigurationStore

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNREGISTERED = "unregistered"
    ACTIVE = "active"
    OVER_QUOTA = "over_quota"
    BANNED = "banned"
    DISABLED = "disabled"


# 拒绝登录时返回给客户端的错误键
STATE_ERROR_KEYS = {
    SessionState.UNREGISTERED: "errors.invalid_key",
    SessionState.DISABLED: "errors.invalid_key",
    SessionState.OVER_QUOTA: "errors.quota_exceeded",
    SessionState.BANNED: "errors.device_banned",
}


@dataclass(frozen=True)
class ClientIdentity:
    """客户端身份，由请求头在 API 边界构造"""
    access_key: str
    device_id: Optional[str] = None
    device_info: Optional[str] = None
    location: Optional[str] = None
    image_key: Optional[str] = None

    def ensure_device_id(self) -> "ClientIdentity":
        """没有设备 ID 时生成一个新的，由客户端负责保存"""
        if self.device_id:
            return self
        return replace(self, device_id=str(uuid4()))


@dataclass
class LoginResult:
    success: bool
    state: SessionState
    device_id: str

    @property
    def error_key(self) -> Optional[str]:
        return None if self.success else STATE_ERROR_KEYS.get(self.state, "errors.invalid_key")


class SessionGate:
    """登录与图片密钥校验"""

    def __init__(self, store: ConfigurationStore):
        self.store = store

    async def session_state(self, code: str, device_id: str) -> SessionState:
        key = await self.store.get_access_key(code)
        if not key:
            return SessionState.UNREGISTERED

        session = await self.store.get_device_session(code, device_id)
        if not session:
            return SessionState.UNREGISTERED
        if session.is_banned:
            return SessionState.BANNED
        if not key.is_active:
            return SessionState.OVER_QUOTA if key.is_over_quota else SessionState.DISABLED
        return SessionState.ACTIVE

    async def login(self, identity: ClientIdentity) -> LoginResult:
        identity = identity.ensure_device_id()
        success = await self.store.login_with_key(
            identity.access_key,
            identity.device_id,
            identity.device_info,
            identity.location,
        )
        if success:
            logger.info(f"Key {identity.access_key} logged in on device {identity.device_id}")
            return LoginResult(success=True, state=SessionState.ACTIVE, device_id=identity.device_id)

        state = await self.session_state(identity.access_key, identity.device_id)
        logger.info(
            f"Rejected login for key {identity.access_key} on device {identity.device_id}: {state.value}"
        )
        return LoginResult(success=False, state=state, device_id=identity.device_id)

    async def verify_image_key(self, image_code: str, main_code: str, device_id: str) -> bool:
        verified = await self.store.verify_image_key(image_code, main_code, device_id)
        if not verified:
            logger.info(f"Rejected image key {image_code} for key {main_code}")
        return verified

    async def registered_session(self, identity: ClientIdentity) -> Optional[DeviceSession]:
        """
        解题接口的准入：设备最近一次用该密钥登录成功且未被封禁时返回其会话

        登录之后密钥才被停用（例如超额）不在这里拦截，后续用量由存储端忽略。
        """
        if not identity.access_key or not identity.device_id:
            return None
        session = await self.store.get_device_session(identity.access_key, identity.device_id)
        if session is None or not session.can_transact:
            return None
        return session
