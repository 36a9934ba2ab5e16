"""解题服务

串联一次完整的解题请求：
准入 -> 构建提示词 -> 调用 AI -> 上报用量 -> 写入历史 -> 返回结果

AI 调用失败时不抛异常，而是返回 is_error=True 的回答（"Error: ..."），
并且不写历史、不记用量，前端把它当作一条普通回答显示。
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tongai.core.i18n import normalize_locale, t
from tongai.services.app_settings import AppSettingsService
from tongai.services.prompt_builder import (
    build_follow_up_messages,
    build_prompt,
    build_solve_messages,
    resolve_custom_prefix,
    resolve_level_label,
    resolve_subject_source,
)
from tongai.services.provider import ProviderDispatcher, ProviderError, create_dispatcher
from tongai.services.session_gate import ClientIdentity
from tongai.services.store import ConfigurationStore
from tongai.services.usage_recorder import UsageRecorder, tokens_for

logger = logging.getLogger(__name__)


@dataclass
class SolveRequest:
    question: str
    subject: str
    level: Optional[str] = None
    language: str = "zh-cn"
    image_data: Optional[str] = None
    use_search: bool = False


@dataclass
class TutorAnswer:
    id: str
    question: str
    answer: str
    subject: Optional[str] = None
    grade_label: Optional[str] = None
    is_error: bool = False
    tokens: int = 0


def _timestamp_id() -> str:
    """毫秒时间戳，前端用作乐观插入的临时 ID"""
    return str(int(time.time() * 1000))


class TutorService:
    """解题与追问"""

    def __init__(
        self,
        store: ConfigurationStore,
        recorder: UsageRecorder,
        dispatcher: Optional[ProviderDispatcher] = None,
    ):
        self.store = store
        self.recorder = recorder
        self.settings = AppSettingsService(store)
        self._dispatcher = dispatcher

    async def _get_dispatcher(self) -> ProviderDispatcher:
        if self._dispatcher is None:
            self._dispatcher = await create_dispatcher(self.store)
        return self._dispatcher

    async def _prompt_for(self, request: SolveRequest, language: str) -> tuple:
        mode = await self.settings.ai_mode()
        subjects = await self.store.list_subjects(active_only=True)
        levels = await self.store.list_levels(active_only=True)

        source = resolve_subject_source(request.subject, subjects)
        level_label = resolve_level_label(request.level, language, levels)
        prompt = build_prompt(
            request.question,
            level_label,
            request.subject,
            mode,
            resolve_custom_prefix(source),
            language,
        )
        return prompt, level_label

    async def solve(self, identity: ClientIdentity, request: SolveRequest) -> TutorAnswer:
        language = normalize_locale(request.language)
        prompt, level_label = await self._prompt_for(request, language)
        has_image = bool(request.image_data)

        question = request.question
        if not question.strip() and has_image:
            question = t("placeholders.image_question", language)

        dispatcher = await self._get_dispatcher()
        try:
            result = await dispatcher.dispatch(
                build_solve_messages(prompt, request.image_data),
                has_image=has_image,
                use_search=request.use_search,
            )
        except ProviderError as e:
            logger.warning(f"Solve failed for key {identity.access_key}: {e.message}")
            return TutorAnswer(
                id=_timestamp_id(),
                question=question,
                answer=f"Error: {e.message}",
                subject=request.subject,
                grade_label=level_label,
                is_error=True,
            )

        tokens = tokens_for(result, prompt)
        self.recorder.record_usage(identity, tokens)
        if has_image and identity.image_key:
            self.recorder.record_image_usage(identity.image_key)

        self.recorder.save_history(
            identity, question, result.content, request.subject, level_label
        )

        return TutorAnswer(
            id=_timestamp_id(),
            question=question,
            answer=result.content,
            subject=request.subject,
            grade_label=level_label,
            tokens=tokens,
        )

    async def follow_up(
        self,
        identity: ClientIdentity,
        history: List[Dict[str, Any]],
        text: str,
    ) -> TutorAnswer:
        """追问：只发文字，不写历史，估算用量时只计新问题的长度"""
        context_limit = await self.settings.follow_up_context_limit()
        messages = build_follow_up_messages(history, text, context_limit)

        dispatcher = await self._get_dispatcher()
        try:
            result = await dispatcher.dispatch(messages, has_image=False, use_search=False)
        except ProviderError as e:
            logger.warning(f"Follow-up failed for key {identity.access_key}: {e.message}")
            return TutorAnswer(
                id=_timestamp_id(),
                question=text,
                answer=f"Error: {e.message}",
                is_error=True,
            )

        tokens = tokens_for(result, text)
        self.recorder.record_usage(identity, tokens)

        return TutorAnswer(id=_timestamp_id(), question=text, answer=result.content, tokens=tokens)
