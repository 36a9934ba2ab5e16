"""
AI 服务调用测试

覆盖:
  - 模型选择与联网搜索工具附加规则
  - 请求体与请求头
  - 失败分类：非 2xx、响应格式错误、网络错误
  - 配置解析：后台配置覆盖默认值，读取失败回退
"""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from tongai.core.config import get_settings
from tongai.services.provider import (
    INVALID_RESPONSE_MESSAGE,
    WEB_SEARCH_TOOL,
    InvalidResponseError,
    ProviderConfig,
    ProviderDispatcher,
    ProviderError,
    resolve_provider_config,
)

CONFIG = ProviderConfig(
    api_key="sk-abc",
    base_url="https://ai.example.com/v1",
    text_model="text-model",
    vision_model="vision-model",
)

OK_BODY = {
    "choices": [{"message": {"role": "assistant", "content": "答案是 $x=2$"}}],
    "usage": {"total_tokens": 321},
}


def make_dispatcher(handler):
    """用 MockTransport 记录请求并返回预设响应"""
    requests = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    return ProviderDispatcher(CONFIG, client=client, timeout=5), requests


def sent_body(request: httpx.Request) -> dict:
    return json.loads(request.content)


class TestDispatchRequest:
    """请求构造"""

    @pytest.mark.asyncio
    async def test_text_request(self):
        dispatcher, requests = make_dispatcher(lambda r: httpx.Response(200, json=OK_BODY))
        messages = [{"role": "user", "content": "1+1"}]

        result = await dispatcher.dispatch(messages, has_image=False, use_search=False)

        assert result.content == "答案是 $x=2$"
        assert result.total_tokens == 321
        request = requests[0]
        assert str(request.url) == "https://ai.example.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-abc"
        assert sent_body(request) == {
            "model": "text-model",
            "messages": messages,
            "stream": False,
            "temperature": 0.7,
        }

    @pytest.mark.asyncio
    async def test_search_attaches_tool(self):
        dispatcher, requests = make_dispatcher(lambda r: httpx.Response(200, json=OK_BODY))

        await dispatcher.dispatch([{"role": "user", "content": "今天天气"}], has_image=False, use_search=True)

        body = sent_body(requests[0])
        assert body["model"] == "text-model"
        assert body["tools"] == [WEB_SEARCH_TOOL]

    @pytest.mark.asyncio
    async def test_image_uses_vision_model_without_tools(self):
        """带图片时使用视觉模型，即使要求联网也不带 tools"""
        dispatcher, requests = make_dispatcher(lambda r: httpx.Response(200, json=OK_BODY))

        await dispatcher.dispatch([{"role": "user", "content": []}], has_image=True, use_search=True)

        body = sent_body(requests[0])
        assert body["model"] == "vision-model"
        assert "tools" not in body

    @pytest.mark.asyncio
    async def test_missing_usage(self):
        body = {"choices": [{"message": {"content": "ok"}}]}
        dispatcher, _ = make_dispatcher(lambda r: httpx.Response(200, json=body))

        result = await dispatcher.dispatch([], has_image=False, use_search=False)

        assert result.content == "ok"
        assert result.total_tokens is None

    @pytest.mark.asyncio
    async def test_trailing_slash_in_base_url(self):
        requests = []

        def _handler(request):
            requests.append(request)
            return httpx.Response(200, json=OK_BODY)

        dispatcher = ProviderDispatcher(
            ProviderConfig("k", "https://ai.example.com/v1/", "t", "v"),
            client=httpx.AsyncClient(transport=httpx.MockTransport(_handler)),
            timeout=1,
        )
        await dispatcher.dispatch([], has_image=False, use_search=False)

        assert str(requests[0].url) == "https://ai.example.com/v1/chat/completions"


class TestDispatchFailures:
    """失败分类"""

    @pytest.mark.asyncio
    async def test_structured_error_message(self):
        dispatcher, _ = make_dispatcher(
            lambda r: httpx.Response(401, json={"error": {"message": "Invalid API key"}})
        )

        with pytest.raises(ProviderError) as exc_info:
            await dispatcher.dispatch([], has_image=False, use_search=False)

        assert exc_info.value.message == "Invalid API key"
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_generic_error_message(self):
        dispatcher, _ = make_dispatcher(lambda r: httpx.Response(503, text="<html>down</html>"))

        with pytest.raises(ProviderError) as exc_info:
            await dispatcher.dispatch([], has_image=False, use_search=False)

        assert exc_info.value.message == "API Request failed: 503 Service Unavailable"
        assert not isinstance(exc_info.value, InvalidResponseError)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {},
        {"choices": []},
        {"choices": [{"message": {}}]},
        {"choices": [{"message": {"content": None}}]},
    ])
    async def test_invalid_response_format(self, body):
        dispatcher, _ = make_dispatcher(lambda r: httpx.Response(200, json=body))

        with pytest.raises(InvalidResponseError) as exc_info:
            await dispatcher.dispatch([], has_image=False, use_search=False)

        assert exc_info.value.message == INVALID_RESPONSE_MESSAGE

    @pytest.mark.asyncio
    async def test_network_error(self):
        def _raise(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher, _ = make_dispatcher(_raise)

        with pytest.raises(ProviderError):
            await dispatcher.dispatch([], has_image=False, use_search=False)

    @pytest.mark.asyncio
    async def test_no_retry(self):
        dispatcher, requests = make_dispatcher(lambda r: httpx.Response(500, json={}))

        with pytest.raises(ProviderError):
            await dispatcher.dispatch([], has_image=False, use_search=False)

        assert len(requests) == 1


class TestResolveProviderConfig:
    """配置解析"""

    @pytest.mark.asyncio
    async def test_defaults_without_store(self):
        settings = get_settings()
        config = await resolve_provider_config(None)

        assert config.base_url == settings.ai_base_url
        assert config.text_model == settings.ai_text_model
        assert config.vision_model == settings.ai_vision_model

    @pytest.mark.asyncio
    async def test_store_values_override(self):
        store = AsyncMock()
        store.get_config_values.return_value = {
            "ai_api_key": "sk-store",
            "ai_text_model": "custom-text",
            "ai_vision_model": "   ",
        }

        config = await resolve_provider_config(store)

        assert config.api_key == "sk-store"
        assert config.text_model == "custom-text"
        # 空白值不覆盖默认值
        assert config.vision_model == get_settings().ai_vision_model
        assert config.base_url == get_settings().ai_base_url

    @pytest.mark.asyncio
    async def test_store_failure_falls_back(self):
        store = AsyncMock()
        store.get_config_values.side_effect = RuntimeError("db down")

        config = await resolve_provider_config(store)

        assert config == ProviderConfig.from_settings(get_settings())
