"""
解题服务测试

覆盖:
  - 端到端：登录 -> 解题 -> 用量累计 -> 历史写入
  - AI 失败时返回错误回答且不记用量、不写历史
  - 图片用量只在带图片且有图片密钥时记录
  - 后台学科前缀、年级、AI 模式生效
  - 追问按配置截取上下文
"""
import json

import httpx
import pytest
from fastapi import BackgroundTasks

from tongai.models import AccessKey, ImageAccessKey
from tongai.services.prompt_builder import DEFAULT_PREFIXES, SYSTEM_PROMPT
from tongai.services.provider import ProviderConfig, ProviderDispatcher
from tongai.services.session_gate import ClientIdentity, SessionGate
from tongai.services.store import ConfigurationStore
from tongai.services.tutor import SolveRequest, TutorService
from tongai.services.usage_recorder import UsageRecorder


CONFIG = ProviderConfig("sk-test", "https://ai.example.com/v1", "text-model", "vision-model")


class FakeProvider:
    """记录请求体并按预设返回"""

    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {
            "choices": [{"message": {"content": "x = 2"}}],
            "usage": {"total_tokens": 500},
        }
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        return httpx.Response(self.status_code, json=self.body)

    def dispatcher(self) -> ProviderDispatcher:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return ProviderDispatcher(CONFIG, client=client, timeout=5)


@pytest.fixture
def tasks():
    return BackgroundTasks()


def make_service(db, session_factory, tasks, provider):
    recorder = UsageRecorder(tasks, session_factory=session_factory)
    return TutorService(ConfigurationStore(db), recorder, dispatcher=provider.dispatcher())


IDENTITY = ClientIdentity(access_key="vip-1", device_id="dev-1", device_info="ua", location="Beijing")


class TestSolve:

    @pytest.mark.asyncio
    async def test_end_to_end_usage(self, db, session_factory, tasks, active_key, reload_key):
        """登录后解题，provider 报告 500 tokens，密钥用量正好增加 500"""
        store = ConfigurationStore(db)
        login = await SessionGate(store).login(IDENTITY)
        assert login.success is True
        before = (await reload_key(AccessKey, "vip-1")).total_tokens

        service = make_service(db, session_factory, tasks, FakeProvider())
        answer = await service.solve(IDENTITY, SolveRequest(question="2x=4", subject="math", level="7"))
        await tasks()

        assert answer.is_error is False
        assert answer.answer == "x = 2"
        assert answer.tokens == 500
        assert answer.grade_label == "七年级"
        assert (await reload_key(AccessKey, "vip-1")).total_tokens == before + 500

        history = await store.fetch_chat_history("vip-1")
        assert [(h.question, h.answer, h.subject, h.grade_label) for h in history] == [
            ("2x=4", "x = 2", "math", "七年级")
        ]

    @pytest.mark.asyncio
    async def test_prompt_sent_to_provider(self, db, session_factory, tasks, active_key):
        provider = FakeProvider()
        service = make_service(db, session_factory, tasks, provider)

        await service.solve(IDENTITY, SolveRequest(question="2x=4", subject="math", level="7"))
        await tasks()

        messages = provider.requests[0]["messages"]
        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert messages[1]["content"] == DEFAULT_PREFIXES["zh-cn"]["math"] + "2x=4" + " 用七年级的方法解答。"

    @pytest.mark.asyncio
    async def test_estimate_when_provider_has_no_usage(self, db, session_factory, tasks, active_key, reload_key):
        await SessionGate(ConfigurationStore(db)).login(IDENTITY)
        await ConfigurationStore(db).update_config_value("ai_mode", "normal")
        provider = FakeProvider(body={"choices": [{"message": {"content": "a" * 60}}]})
        service = make_service(db, session_factory, tasks, provider)

        answer = await service.solve(IDENTITY, SolveRequest(question="q" * 30, subject="math"))
        await tasks()

        assert answer.tokens == 30
        assert (await reload_key(AccessKey, "vip-1")).total_tokens == 30

    @pytest.mark.asyncio
    async def test_provider_failure_returns_error_answer(self, db, session_factory, tasks, active_key, reload_key):
        await SessionGate(ConfigurationStore(db)).login(IDENTITY)
        provider = FakeProvider(status_code=429, body={"error": {"message": "Rate limit exceeded"}})
        service = make_service(db, session_factory, tasks, provider)

        answer = await service.solve(IDENTITY, SolveRequest(question="1+1", subject="math"))
        await tasks()

        assert answer.is_error is True
        assert answer.answer == "Error: Rate limit exceeded"
        assert (await reload_key(AccessKey, "vip-1")).total_tokens == 0
        assert await ConfigurationStore(db).fetch_chat_history("vip-1") == []

    @pytest.mark.asyncio
    async def test_image_usage_with_image_key(self, db, session_factory, tasks, active_key, image_key, reload_key):
        gate = SessionGate(ConfigurationStore(db))
        await gate.login(IDENTITY)
        await gate.verify_image_key("img-1", "vip-1", "dev-1")
        ident = ClientIdentity(access_key="vip-1", device_id="dev-1", image_key="img-1")
        provider = FakeProvider()
        service = make_service(db, session_factory, tasks, provider)

        answer = await service.solve(
            ident,
            SolveRequest(question="", subject="math", image_data="data:image/png;base64,AAAA", use_search=True),
        )
        await tasks()

        body = provider.requests[0]
        assert body["model"] == "vision-model"
        assert "tools" not in body
        assert body["messages"][1]["content"][0]["type"] == "image_url"
        assert answer.question == "[图片上传]"
        assert (await reload_key(ImageAccessKey, "img-1")).total_images == 1

    @pytest.mark.asyncio
    async def test_no_image_usage_without_image(self, db, session_factory, tasks, active_key, image_key, reload_key):
        await SessionGate(ConfigurationStore(db)).login(IDENTITY)
        ident = ClientIdentity(access_key="vip-1", device_id="dev-1", image_key="img-1")
        service = make_service(db, session_factory, tasks, FakeProvider())

        await service.solve(ident, SolveRequest(question="1+1", subject="math"))
        await tasks()

        assert (await reload_key(ImageAccessKey, "img-1")).total_images == 0

    @pytest.mark.asyncio
    async def test_configured_subject_prefix(self, db, session_factory, tasks, active_key):
        store = ConfigurationStore(db)
        await store.create_subject("physics", "物理", prompt_prefix="你是物理老师。")
        await store.create_level("g8", "初二")
        provider = FakeProvider()
        service = make_service(db, session_factory, tasks, provider)

        await service.solve(IDENTITY, SolveRequest(question="求加速度", subject="physics", level="g8"))
        await tasks()

        assert provider.requests[0]["messages"][1]["content"] == "你是物理老师。求加速度 用初二的方法解答。"

    @pytest.mark.asyncio
    async def test_normal_mode(self, db, session_factory, tasks, active_key):
        await ConfigurationStore(db).update_config_value("ai_mode", "normal")
        provider = FakeProvider()
        service = make_service(db, session_factory, tasks, provider)

        await service.solve(IDENTITY, SolveRequest(question="hello", subject="math", level="7"))
        await tasks()

        assert provider.requests[0]["messages"][1]["content"] == "hello"


class TestFollowUp:

    @pytest.mark.asyncio
    async def test_uses_configured_context_limit(self, db, session_factory, tasks, active_key, reload_key):
        store = ConfigurationStore(db)
        await SessionGate(store).login(IDENTITY)
        await store.update_config_value("follow_up_context_limit", "3")
        provider = FakeProvider(body={"choices": [{"message": {"content": "a" * 60}}]})
        service = make_service(db, session_factory, tasks, provider)
        history = [
            {"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"} for i in range(8)
        ]

        answer = await service.follow_up(IDENTITY, history, "q" * 30)
        await tasks()

        messages = provider.requests[0]["messages"]
        assert len(messages) == 5
        assert messages[1:4] == history[-3:]
        assert messages[-1] == {"role": "user", "content": "q" * 30}
        # 估算时只计新问题长度
        assert answer.tokens == 30
        assert (await reload_key(AccessKey, "vip-1")).total_tokens == 30
        # 追问不写历史
        assert await store.fetch_chat_history("vip-1") == []

    @pytest.mark.asyncio
    async def test_failure(self, db, session_factory, tasks, active_key):
        provider = FakeProvider(status_code=200, body={"choices": []})
        service = make_service(db, session_factory, tasks, provider)

        answer = await service.follow_up(IDENTITY, [], "why?")

        assert answer.is_error is True
        assert answer.answer == "Error: Invalid response format from AI service."
