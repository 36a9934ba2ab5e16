"""AI 服务调用

兼容 OpenAI chat-completions 协议（默认 SiliconFlow）。
单次非流式请求，temperature 固定 0.7，失败直接抛给调用方，不做重试。
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from tongai.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

TEMPERATURE = 0.7

WEB_SEARCH_TOOL = {
    "type": "web_search",
    "web_search": {
        "enable": True,
        "search_result": True,
    },
}

INVALID_RESPONSE_MESSAGE = "Invalid response format from AI service."

# app_config 中的键名 -> ProviderConfig 字段
PROVIDER_CONFIG_KEYS = {
    "ai_api_key": "api_key",
    "ai_base_url": "base_url",
    "ai_text_model": "text_model",
    "ai_vision_model": "vision_model",
}


class ProviderError(Exception):
    """AI 服务请求失败"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class InvalidResponseError(ProviderError):
    """AI 服务返回了 2xx，但没有可用的 choices"""
    def __init__(self, message: str = INVALID_RESPONSE_MESSAGE):
        super().__init__(message)


@dataclass
class ProviderConfig:
    api_key: str
    base_url: str
    text_model: str
    vision_model: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderConfig":
        return cls(
            api_key=settings.ai_api_key,
            base_url=settings.ai_base_url,
            text_model=settings.ai_text_model,
            vision_model=settings.ai_vision_model,
        )


@dataclass
class DispatchResult:
    content: str
    total_tokens: Optional[int] = None


async def resolve_provider_config(
    store: Any = None, settings: Optional[Settings] = None
) -> ProviderConfig:
    """
    解析 AI 服务配置

    后台配置（非空）覆盖 Settings 中的默认值；读取失败时整体回退到默认值。

    Args:
        store: 提供 get_config_values(keys) 的配置存储，None 表示只用默认值
        settings: 默认配置，None 时使用全局 Settings
    """
    config = ProviderConfig.from_settings(settings or get_settings())
    if store is None:
        return config

    try:
        values = await store.get_config_values(PROVIDER_CONFIG_KEYS.keys())
    except Exception as e:
        logger.warning(f"Failed to read provider config from store, using defaults: {e}")
        return config

    for key, field in PROVIDER_CONFIG_KEYS.items():
        value = values.get(key)
        if value and value.strip():
            setattr(config, field, value.strip())
    return config


def _error_message(response: httpx.Response) -> str:
    """优先取 {"error": {"message": ...}}，否则给出状态码"""
    try:
        data = response.json()
        message = data.get("error", {}).get("message")
        if isinstance(message, str) and message:
            return message
    except (ValueError, AttributeError):
        pass
    return f"API Request failed: {response.status_code} {response.reason_phrase}"


def _parse_total_tokens(data: Dict[str, Any]) -> Optional[int]:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    total = usage.get("total_tokens")
    if isinstance(total, int) and not isinstance(total, bool):
        return total
    return None


class ProviderDispatcher:
    """AI 请求分发：选择模型、附加工具、发送请求并解析结果"""

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.config = config
        self._client = client
        self.timeout = timeout if timeout is not None else get_settings().ai_request_timeout

    def select_model(self, has_image: bool) -> str:
        return self.config.vision_model if has_image else self.config.text_model

    def build_body(
        self, messages: List[Dict[str, Any]], has_image: bool, use_search: bool
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.select_model(has_image),
            "messages": messages,
            "stream": False,
            "temperature": TEMPERATURE,
        }
        # 多模态请求不支持联网搜索
        if use_search and not has_image:
            body["tools"] = [WEB_SEARCH_TOOL]
        return body

    async def _post(self, url: str, body: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        if self._client is not None:
            return await self._client.post(url, json=body, headers=headers, timeout=self.timeout)

        async with httpx.AsyncClient() as client:
            return await client.post(url, json=body, headers=headers, timeout=self.timeout)

    async def dispatch(
        self,
        messages: List[Dict[str, Any]],
        has_image: bool = False,
        use_search: bool = False,
    ) -> DispatchResult:
        """
        发送一次 chat-completions 请求

        Raises:
            ProviderError: 网络错误或非 2xx 响应
            InvalidResponseError: 2xx 但响应中没有可用内容
        """
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        body = self.build_body(messages, has_image, use_search)

        try:
            response = await self._post(url, body)
        except httpx.RequestError as e:
            logger.error(f"AI request to {url} failed: {e}")
            raise ProviderError(f"API Request failed: {e}") from e

        if not response.is_success:
            message = _error_message(response)
            logger.error(f"AI request returned {response.status_code}: {message}")
            raise ProviderError(message, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise InvalidResponseError()

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices, list):
            raise InvalidResponseError()

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise InvalidResponseError()

        return DispatchResult(content=content, total_tokens=_parse_total_tokens(data))


async def create_dispatcher(store: Any = None) -> ProviderDispatcher:
    """按当前配置创建分发器"""
    config = await resolve_provider_config(store)
    return ProviderDispatcher(config)
