"""
用量记录与后台任务测试
"""
import math

import pytest
from fastapi import BackgroundTasks
from hypothesis import given, strategies as st

from tongai.models import AccessKey, ImageAccessKey
from tongai.services.provider import DispatchResult
from tongai.services.session_gate import ClientIdentity
from tongai.services.store import ConfigurationStore
from tongai.services.usage_recorder import UsageRecorder, estimate_tokens, tokens_for


class TestEstimate:
    """Token 估算"""

    def test_literal_example(self):
        assert estimate_tokens("p" * 30, "a" * 60) == 30

    def test_rounds_up(self):
        assert estimate_tokens("ab", "cd") == 2
        assert estimate_tokens("", "") == 0

    @given(prompt=st.text(max_size=500), answer=st.text(max_size=500))
    def test_formula(self, prompt, answer):
        assert estimate_tokens(prompt, answer) == math.ceil((len(prompt) + len(answer)) / 3)

    def test_prefers_provider_usage(self):
        assert tokens_for(DispatchResult(content="a" * 60, total_tokens=500), "p" * 30) == 500

    @pytest.mark.parametrize("total", [None, 0])
    def test_falls_back_to_estimate(self, total):
        assert tokens_for(DispatchResult(content="a" * 60, total_tokens=total), "p" * 30) == 30


class TestUsageRecorder:
    """用量上报挂在 BackgroundTasks 上，响应之后执行"""

    @pytest.mark.asyncio
    async def test_nothing_written_before_tasks_run(self, db, session_factory, active_key, reload_key):
        await ConfigurationStore(db).login_with_key("vip-1", "dev-1", "ua")
        tasks = BackgroundTasks()
        recorder = UsageRecorder(tasks, session_factory=session_factory)

        recorder.record_usage(ClientIdentity(access_key="vip-1", device_id="dev-1"), 250)

        assert len(tasks.tasks) == 1
        assert (await reload_key(AccessKey, "vip-1")).total_tokens == 0

        await tasks()
        assert (await reload_key(AccessKey, "vip-1")).total_tokens == 250

    @pytest.mark.asyncio
    async def test_record_image_usage(self, session_factory, image_key, reload_key):
        tasks = BackgroundTasks()
        recorder = UsageRecorder(tasks, session_factory=session_factory)

        recorder.record_image_usage("img-1")
        await tasks()

        assert (await reload_key(ImageAccessKey, "img-1")).total_images == 1

    @pytest.mark.asyncio
    async def test_save_history(self, db, session_factory, active_key):
        store = ConfigurationStore(db)
        await store.login_with_key("vip-1", "dev-1", "ua")
        tasks = BackgroundTasks()
        recorder = UsageRecorder(tasks, session_factory=session_factory)

        recorder.save_history(
            ClientIdentity(access_key="vip-1", device_id="dev-1"), "1+1", "2", "math", "一年级"
        )
        await tasks()

        assert [(h.question, h.device_id) for h in await store.fetch_chat_history("vip-1")] == [
            ("1+1", "dev-1")
        ]

    @pytest.mark.asyncio
    async def test_failed_job_is_logged_and_later_jobs_still_run(
        self, db, session_factory, active_key, reload_key, caplog
    ):
        await ConfigurationStore(db).login_with_key("vip-1", "dev-1", "ua")
        calls = {"n": 0}

        def flaky_factory():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("cannot connect")
            return session_factory()

        tasks = BackgroundTasks()
        recorder = UsageRecorder(tasks, session_factory=flaky_factory)
        ident = ClientIdentity(access_key="vip-1", device_id="dev-1")

        recorder.record_usage(ident, 10)
        recorder.record_usage(ident, 20)
        await tasks()

        assert "cannot connect" in caplog.text
        assert (await reload_key(AccessKey, "vip-1")).total_tokens == 20

    @pytest.mark.asyncio
    async def test_rejected_device_writes_nothing(self, db, session_factory, active_key, reload_key):
        store = ConfigurationStore(db)
        await store.set_access_key_active(active_key.id, False)
        await store.login_with_key("vip-1", "dev-1", "ua")
        await store.set_access_key_active(active_key.id, True)
        tasks = BackgroundTasks()
        recorder = UsageRecorder(tasks, session_factory=session_factory)
        ident = ClientIdentity(access_key="vip-1", device_id="dev-1")

        recorder.record_usage(ident, 10)
        recorder.save_history(ident, "q", "a", "math", None)
        await tasks()

        assert (await reload_key(AccessKey, "vip-1")).total_tokens == 0
        assert await store.fetch_chat_history("vip-1") == []
