"""系统配置读取

app_config 表里的值都是字符串，这里转换成具体类型。
读取失败或值为空时静默回退到默认值（记录日志），保证前端始终能拿到配置。
"""

import hmac
import logging
from typing import Dict, Iterable, Optional

from tongai.core.config import get_settings
from tongai.services.prompt_builder import (
    DEFAULT_CONTEXT_LIMIT,
    MODE_NORMAL,
    MODE_SOLVER,
    clamp_context_limit,
)
from tongai.services.store import ConfigurationStore

logger = logging.getLogger(__name__)

DEFAULT_APP_TITLE = "TongAI"
DEFAULT_AI_MODE = MODE_SOLVER

# 管理后台可编辑的配置项
EDITABLE_KEYS = (
    "app_title",
    "app_logo",
    "ai_mode",
    "admin_password",
    "ai_api_key",
    "ai_base_url",
    "ai_text_model",
    "ai_vision_model",
    "show_usage_to_user",
    "follow_up_context_limit",
)

# 读取时需要打码的配置项
SECRET_KEYS = ("admin_password", "ai_api_key")

TRUE_VALUES = ("true", "1", "yes", "on")


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in TRUE_VALUES


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"


class AppSettingsService:
    """系统配置服务"""

    def __init__(self, store: ConfigurationStore):
        self.store = store

    async def _read(self, key: str) -> Optional[str]:
        try:
            value = await self.store.get_config_value(key)
        except Exception as e:
            logger.warning(f"Failed to read config '{key}', using default: {e}")
            return None
        if value is None or value.strip() == "":
            return None
        return value.strip()

    async def _read_many(self, keys: Iterable[str]) -> Dict[str, str]:
        try:
            values = await self.store.get_config_values(keys)
        except Exception as e:
            logger.warning(f"Failed to read config values, using defaults: {e}")
            return {}
        return {k: v.strip() for k, v in values.items() if v and v.strip()}

    async def app_title(self) -> str:
        return await self._read("app_title") or DEFAULT_APP_TITLE

    async def app_logo(self) -> Optional[str]:
        return await self._read("app_logo")

    async def ai_mode(self) -> str:
        mode = await self._read("ai_mode")
        return mode if mode in (MODE_NORMAL, MODE_SOLVER) else DEFAULT_AI_MODE

    async def show_usage_to_user(self) -> bool:
        return parse_bool(await self._read("show_usage_to_user"))

    async def follow_up_context_limit(self) -> int:
        value = await self._read("follow_up_context_limit")
        if value is None:
            return clamp_context_limit(get_settings().follow_up_context_limit or DEFAULT_CONTEXT_LIMIT)
        try:
            return clamp_context_limit(int(value))
        except ValueError:
            logger.warning(f"Invalid follow_up_context_limit '{value}', using default")
            return DEFAULT_CONTEXT_LIMIT

    async def public_config(self) -> Dict[str, object]:
        """前端首页需要的配置"""
        values = await self._read_many(("app_title", "app_logo", "ai_mode", "show_usage_to_user"))
        mode = values.get("ai_mode")
        return {
            "app_title": values.get("app_title", DEFAULT_APP_TITLE),
            "app_logo": values.get("app_logo"),
            "ai_mode": mode if mode in (MODE_NORMAL, MODE_SOLVER) else DEFAULT_AI_MODE,
            "show_usage_to_user": parse_bool(values.get("show_usage_to_user")),
        }

    async def verify_admin_password(self, password: str) -> bool:
        """
        管理员密码校验

        Settings 中的主密码始终有效；数据库中配置的密码作为额外可用密码。
        """
        if not password:
            return False
        master = get_settings().admin_password
        if master and hmac.compare_digest(password.encode(), master.encode()):
            return True
        configured = await self._read("admin_password")
        return bool(configured) and hmac.compare_digest(password.encode(), configured.encode())

    async def admin_view(self) -> Dict[str, str]:
        """管理后台展示的配置，敏感项打码"""
        values = await self.store.get_config_values(EDITABLE_KEYS)
        view = {}
        for key in EDITABLE_KEYS:
            value = values.get(key, "")
            view[key] = mask_secret(value) if key in SECRET_KEYS else value
        return view

    async def update(self, updates: Dict[str, Optional[str]]) -> Dict[str, str]:
        """
        只写入允许编辑的键；None 表示不修改

        敏感项如果原样传回打码后的值（前端回填了 admin_view 的结果），视为不修改。
        """
        secrets = await self.store.get_config_values(SECRET_KEYS)
        for key, value in updates.items():
            if key not in EDITABLE_KEYS or value is None:
                continue
            if key in SECRET_KEYS and value == mask_secret(secrets.get(key)):
                continue
            if key == "ai_mode" and value not in (MODE_NORMAL, MODE_SOLVER):
                raise ValueError(f"Unknown ai_mode: {value}")
            if key == "follow_up_context_limit":
                value = str(clamp_context_limit(int(value)))
            elif key == "show_usage_to_user":
                value = "true" if parse_bool(value) else "false"
            await self.store.update_config_value(key, value)
            logger.info(f"Config '{key}' updated")
        return await self.admin_view()


def create_app_settings_service(store: ConfigurationStore) -> AppSettingsService:
    return AppSettingsService(store)
