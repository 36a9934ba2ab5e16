"""用量记录

回答返回给用户之后，由 FastAPI BackgroundTasks 上报 Token、图片用量并写入历史。
上报失败只记日志；额度由存储端在写入时判定，这里不做任何拦截。
"""

import logging
import math
from typing import Callable, Optional

from fastapi import BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession

from tongai.core.database import async_session_maker
from tongai.services.provider import DispatchResult
from tongai.services.session_gate import ClientIdentity
from tongai.services.store import ConfigurationStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


def estimate_tokens(prompt_text: str, answer_text: str) -> int:
    """按字符数粗略估算：ceil((P + A) / 3)"""
    return math.ceil((len(prompt_text) + len(answer_text)) / 3)


def tokens_for(result: DispatchResult, prompt_text: str) -> int:
    """优先使用 AI 服务返回的 usage.total_tokens，缺失时用估算值"""
    if result.total_tokens is not None and result.total_tokens > 0:
        return result.total_tokens
    return estimate_tokens(prompt_text, result.content)


async def report_token_usage(
    session_factory: SessionFactory, code: str, device_id: Optional[str], token_count: int
) -> None:
    try:
        async with session_factory() as db:
            await ConfigurationStore(db).increment_token_usage(code, device_id, token_count)
        logger.debug(f"Recorded {token_count} tokens for key={code} device={device_id}")
    except Exception as e:
        logger.error(f"Token usage report failed for key={code} device={device_id}: {e}")


async def report_image_usage(session_factory: SessionFactory, image_key: str) -> None:
    try:
        async with session_factory() as db:
            await ConfigurationStore(db).increment_image_usage(image_key)
    except Exception as e:
        logger.error(f"Image usage report failed for image key={image_key}: {e}")


async def write_chat_history(
    session_factory: SessionFactory,
    code: str,
    device_id: Optional[str],
    question: str,
    answer: str,
    subject: str,
    grade_label: Optional[str],
) -> None:
    try:
        async with session_factory() as db:
            await ConfigurationStore(db).add_chat_message(
                code, question, answer, subject, grade_label, device_id
            )
    except Exception as e:
        logger.error(f"Chat history write failed for key={code}: {e}")


class UsageRecorder:
    """把用量上报和历史写入挂到本次请求的后台任务上"""

    def __init__(
        self,
        background_tasks: BackgroundTasks,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.background_tasks = background_tasks
        self.session_factory = session_factory or async_session_maker

    def record_usage(self, identity: ClientIdentity, token_count: int) -> None:
        self.background_tasks.add_task(
            report_token_usage,
            self.session_factory,
            identity.access_key,
            identity.device_id,
            token_count,
        )

    def record_image_usage(self, image_key: str) -> None:
        self.background_tasks.add_task(report_image_usage, self.session_factory, image_key)

    def save_history(
        self,
        identity: ClientIdentity,
        question: str,
        answer: str,
        subject: str,
        grade_label: Optional[str],
    ) -> None:
        self.background_tasks.add_task(
            write_chat_history,
            self.session_factory,
            identity.access_key,
            identity.device_id,
            question,
            answer,
            subject,
            grade_label,
        )
