"""解题 API

所有接口都需要 X-Access-Key 与 X-Device-Id，且该设备最近一次登录成功、未被封禁。
密钥在登录之后才超额停用的，解题仍可继续，用量上报会被存储端静默忽略。
"""

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tongai.core.auth_deps import get_client_identity
from tongai.core.database import get_db
from tongai.core.responses import localized_http_exception
from tongai.services.app_settings import create_app_settings_service
from tongai.services.session_gate import ClientIdentity, SessionGate
from tongai.services.store import ConfigurationStore, create_store
from tongai.services.tutor import SolveRequest, TutorService
from tongai.services.usage_recorder import UsageRecorder

router = APIRouter(prefix="/api/tutor", tags=["tutor"])


# ============================================================================
# 请求/响应模型
# ============================================================================

class SolveBody(BaseModel):
    question: str = Field("", max_length=20000)
    subject: str = Field("math", min_length=1, max_length=50)
    level: Optional[str] = Field(None, max_length=50)
    language: str = "zh-cn"
    image: Optional[str] = Field(None, description="data URI，例如 data:image/png;base64,...")
    use_search: bool = False


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class FollowUpBody(BaseModel):
    history: List[ChatMessage] = []
    text: str = Field(..., min_length=1, max_length=20000)


class AnswerResponse(BaseModel):
    id: str
    question: str
    answer: str
    subject: Optional[str] = None
    grade_label: Optional[str] = None
    is_error: bool = False
    tokens: int = 0


class HistoryItem(BaseModel):
    id: str
    question: str
    answer: str
    subject: str
    grade_label: Optional[str] = None
    device_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UsageResponse(BaseModel):
    total_tokens: int
    token_limit: Optional[int] = None
    device_tokens: int
    is_active: bool


# ============================================================================
# 依赖
# ============================================================================

def get_store(db: AsyncSession = Depends(get_db)) -> ConfigurationStore:
    return create_store(db)


def get_tutor_service(
    background_tasks: BackgroundTasks,
    store: ConfigurationStore = Depends(get_store),
) -> TutorService:
    """用量上报与历史写入在响应发送后执行"""
    return TutorService(store, UsageRecorder(background_tasks))


async def require_login(
    request: Request,
    identity: ClientIdentity = Depends(get_client_identity),
    store: ConfigurationStore = Depends(get_store),
) -> ClientIdentity:
    """设备最近一次用该密钥登录必须成功，且之后没有被封禁"""
    session = await SessionGate(store).registered_session(identity)
    if session is not None:
        return identity

    if identity.device_id:
        existing = await store.get_device_session(identity.access_key, identity.device_id)
        if existing is not None and existing.is_banned:
            raise localized_http_exception(request, "errors.device_banned", status.HTTP_403_FORBIDDEN)
    raise localized_http_exception(request, "errors.not_logged_in", status.HTTP_401_UNAUTHORIZED)


# ============================================================================
# 接口
# ============================================================================

@router.post("/solve", response_model=AnswerResponse)
async def solve(
    request: Request,
    body: SolveBody,
    identity: ClientIdentity = Depends(require_login),
    store: ConfigurationStore = Depends(get_store),
    service: TutorService = Depends(get_tutor_service),
):
    """
    解题

    AI 调用失败时仍返回 200，is_error=True，answer 为 "Error: ..."。
    上传图片前必须先通过 /api/auth/image-key 关联图片密钥。
    """
    if body.image:
        session = await store.get_device_session(identity.access_key, identity.device_id)
        if not identity.image_key or session.image_key_code != identity.image_key:
            raise localized_http_exception(
                request, "errors.image_key_required", status.HTTP_403_FORBIDDEN
            )

    answer = await service.solve(
        identity,
        SolveRequest(
            question=body.question,
            subject=body.subject,
            level=body.level,
            language=body.language,
            image_data=body.image,
            use_search=body.use_search,
        ),
    )
    return AnswerResponse(**answer.__dict__)


@router.post("/follow-up", response_model=AnswerResponse)
async def follow_up(
    body: FollowUpBody,
    identity: ClientIdentity = Depends(require_login),
    service: TutorService = Depends(get_tutor_service),
):
    """在已有解答的基础上追问"""
    answer = await service.follow_up(
        identity, [m.model_dump() for m in body.history], body.text
    )
    return AnswerResponse(**answer.__dict__)


@router.get("/history", response_model=List[HistoryItem])
async def get_history(
    identity: ClientIdentity = Depends(require_login),
    store: ConfigurationStore = Depends(get_store),
):
    """当前密钥的历史记录（最新在前，最多 50 条）"""
    return await store.fetch_chat_history(identity.access_key)


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    request: Request,
    identity: ClientIdentity = Depends(require_login),
    store: ConfigurationStore = Depends(get_store),
):
    """密钥用量，管理员开启 show_usage_to_user 后可见"""
    if not await create_app_settings_service(store).show_usage_to_user():
        raise localized_http_exception(request, "errors.usage_hidden", status.HTTP_403_FORBIDDEN)

    key = await store.get_access_key(identity.access_key)
    session = await store.get_device_session(identity.access_key, identity.device_id)
    if key is None or session is None:
        raise localized_http_exception(request, "errors.not_logged_in", status.HTTP_401_UNAUTHORIZED)

    return UsageResponse(
        total_tokens=key.total_tokens,
        token_limit=key.token_limit,
        device_tokens=session.total_tokens,
        is_active=key.is_active,
    )
