"""管理后台 API

除 /login 外的接口都需要 Authorization: Bearer <token>。
"""

import logging
from datetime import datetime
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tongai.core.auth_deps import create_admin_token, get_current_admin
from tongai.core.database import get_db
from tongai.core.responses import localized_http_exception
from tongai.middleware.endpoint_limit import rate_limit
from tongai.services.app_settings import create_app_settings_service
from tongai.services.store import (
    ConfigurationStore,
    DuplicateCodeError,
    OverQuotaReactivationError,
    RecordNotFoundError,
    create_store,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ============================================================================
# 请求/响应模型
# ============================================================================

class AdminLoginRequest(BaseModel):
    password: str


class AdminLoginResponse(BaseModel):
    token: str
    expires_at: datetime


class AccessKeyCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=100)
    note: Optional[str] = None
    token_limit: Optional[int] = Field(None, ge=0)


class AccessKeyResponse(BaseModel):
    id: str
    code: str
    note: Optional[str] = None
    is_active: bool
    total_tokens: int
    token_limit: Optional[int] = None
    is_over_quota: bool
    device_count: int = 0
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ImageKeyCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=100)
    note: Optional[str] = None
    image_limit: Optional[int] = Field(None, ge=0)


class ImageKeyResponse(BaseModel):
    id: str
    code: str
    note: Optional[str] = None
    is_active: bool
    total_images: int
    image_limit: Optional[int] = None
    is_over_quota: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    is_active: bool
    force: bool = False


class TokenLimitUpdate(BaseModel):
    token_limit: Optional[int] = Field(None, ge=0)


class ImageLimitUpdate(BaseModel):
    image_limit: Optional[int] = Field(None, ge=0)


class DeviceResponse(BaseModel):
    id: str
    key_code: str
    device_id: str
    device_info: Optional[str] = None
    location: Optional[str] = None
    last_seen: Optional[datetime] = None
    total_tokens: int
    is_banned: bool
    last_login_ok: bool = False
    image_key_code: Optional[str] = None

    class Config:
        from_attributes = True


class DeviceBanUpdate(BaseModel):
    key_code: str
    device_id: str
    is_banned: bool


class HistoryResponse(BaseModel):
    id: str
    key_code: str
    device_id: Optional[str] = None
    question: str
    answer: str
    subject: str
    grade_label: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SubjectCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")
    label: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = None
    icon: Optional[str] = None
    prompt_prefix: Optional[str] = None
    background_chars: Optional[str] = None
    char_opacity: Optional[float] = Field(None, ge=0, le=1)
    char_size_scale: Optional[float] = Field(None, gt=0)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class SubjectUpdate(BaseModel):
    label: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = None
    icon: Optional[str] = None
    prompt_prefix: Optional[str] = None
    background_chars: Optional[str] = None
    char_opacity: Optional[float] = Field(None, ge=0, le=1)
    char_size_scale: Optional[float] = Field(None, gt=0)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class SubjectResponse(BaseModel):
    code: str
    label: str
    color: Optional[str] = None
    icon: Optional[str] = None
    prompt_prefix: Optional[str] = None
    background_chars: Optional[str] = None
    char_opacity: Optional[float] = None
    char_size_scale: Optional[float] = None
    is_active: bool
    sort_order: int

    class Config:
        from_attributes = True


class LevelCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    label: str = Field(..., min_length=1, max_length=100)
    sort_order: int = 0
    is_active: bool = True


class LevelUpdate(BaseModel):
    label: Optional[str] = Field(None, min_length=1, max_length=100)
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


class LevelResponse(BaseModel):
    code: str
    label: str
    sort_order: int
    is_active: bool

    class Config:
        from_attributes = True


class SettingsUpdate(BaseModel):
    app_title: Optional[str] = None
    app_logo: Optional[str] = None
    ai_mode: Optional[Literal["normal", "solver"]] = None
    admin_password: Optional[str] = None
    ai_api_key: Optional[str] = None
    ai_base_url: Optional[str] = None
    ai_text_model: Optional[str] = None
    ai_vision_model: Optional[str] = None
    show_usage_to_user: Optional[bool] = None
    follow_up_context_limit: Optional[int] = Field(None, ge=1, le=20)


# ============================================================================
# 依赖与辅助
# ============================================================================

def get_store(db: AsyncSession = Depends(get_db)) -> ConfigurationStore:
    return create_store(db)


def not_found(e: RecordNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def duplicate(e: DuplicateCodeError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


def reactivation_warning(e: OverQuotaReactivationError) -> HTTPException:
    """超额密钥重新启用前的提示，前端确认后带 force=true 重试"""
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "message": str(e),
            "code": e.code,
            "used": e.used,
            "limit": e.limit,
            "requires_force": True,
        },
    )


def access_key_response(key, device_count: int = 0) -> AccessKeyResponse:
    response = AccessKeyResponse.model_validate(key)
    response.device_count = device_count
    return response


# ============================================================================
# 认证
# ============================================================================

@router.post("/login", response_model=AdminLoginResponse)
@rate_limit(max_requests=10, window=60)  # 每分钟最多 10 次登录尝试
async def admin_login(
    request: Request,
    login_request: AdminLoginRequest,
    store: ConfigurationStore = Depends(get_store),
):
    """管理员密码登录"""
    if not await create_app_settings_service(store).verify_admin_password(login_request.password):
        logger.warning("Admin login failed")
        raise localized_http_exception(request, "errors.admin_login_failed", status.HTTP_401_UNAUTHORIZED)

    token, expires_at = create_admin_token()
    return AdminLoginResponse(token=token, expires_at=expires_at)


# ============================================================================
# 主密钥
# ============================================================================

@router.get("/keys", response_model=List[AccessKeyResponse])
async def list_keys(
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    """所有主密钥（含设备数）"""
    return [access_key_response(key, count) for key, count in await store.list_access_keys()]


@router.post("/keys", response_model=AccessKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_key(
    body: AccessKeyCreate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        key = await store.create_access_key(body.code.strip(), body.note, body.token_limit)
    except DuplicateCodeError as e:
        raise duplicate(e)
    logger.info(f"Access key {key.code} created")
    return access_key_response(key)


@router.put("/keys/{key_id}/status", response_model=AccessKeyResponse)
async def update_key_status(
    key_id: str,
    body: StatusUpdate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    """启用/停用；超额密钥需要 force=true 才能启用"""
    try:
        key = await store.set_access_key_active(key_id, body.is_active, force=body.force)
    except RecordNotFoundError as e:
        raise not_found(e)
    except OverQuotaReactivationError as e:
        raise reactivation_warning(e)
    return access_key_response(key)


@router.put("/keys/{key_id}/limit", response_model=AccessKeyResponse)
async def update_key_limit(
    key_id: str,
    body: TokenLimitUpdate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    """修改 Token 限额，null 表示不限量"""
    try:
        key = await store.update_access_key_limit(key_id, body.token_limit)
    except RecordNotFoundError as e:
        raise not_found(e)
    return access_key_response(key)


@router.delete("/keys/{key_id}")
async def delete_key(
    key_id: str,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    """删除主密钥及其设备和历史"""
    try:
        await store.delete_access_key(key_id)
    except RecordNotFoundError as e:
        raise not_found(e)
    return {"success": True}


# ============================================================================
# 图片密钥
# ============================================================================

@router.get("/image-keys", response_model=List[ImageKeyResponse])
async def list_image_keys(
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    return await store.list_image_keys()


@router.post("/image-keys", response_model=ImageKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_image_key(
    body: ImageKeyCreate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        return await store.create_image_key(body.code.strip(), body.note, body.image_limit)
    except DuplicateCodeError as e:
        raise duplicate(e)


@router.put("/image-keys/{key_id}/status", response_model=ImageKeyResponse)
async def update_image_key_status(
    key_id: str,
    body: StatusUpdate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        return await store.set_image_key_active(key_id, body.is_active, force=body.force)
    except RecordNotFoundError as e:
        raise not_found(e)
    except OverQuotaReactivationError as e:
        raise reactivation_warning(e)


@router.put("/image-keys/{key_id}/limit", response_model=ImageKeyResponse)
async def update_image_key_limit(
    key_id: str,
    body: ImageLimitUpdate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        return await store.update_image_key_limit(key_id, body.image_limit)
    except RecordNotFoundError as e:
        raise not_found(e)


@router.delete("/image-keys/{key_id}")
async def delete_image_key(
    key_id: str,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        await store.delete_image_key(key_id)
    except RecordNotFoundError as e:
        raise not_found(e)
    return {"success": True}


# ============================================================================
# 设备
# ============================================================================

@router.get("/devices", response_model=List[DeviceResponse])
async def list_devices(
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    """设备会话，最近活跃在前"""
    return await store.list_device_sessions()


@router.put("/devices/ban", response_model=DeviceResponse)
async def update_device_ban(
    body: DeviceBanUpdate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        session = await store.set_device_ban(body.key_code, body.device_id, body.is_banned)
    except RecordNotFoundError as e:
        raise not_found(e)
    logger.info(
        f"Device {body.device_id} of key {body.key_code} {'banned' if body.is_banned else 'unbanned'}"
    )
    return session


# ============================================================================
# 历史记录
# ============================================================================

@router.get("/history", response_model=List[HistoryResponse])
async def get_history(
    key: Optional[str] = Query(None, description="按主密钥筛选"),
    device: Optional[str] = Query(None, description="按设备 ID 筛选"),
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    """按密钥或设备查看历史（最多 100 条）"""
    if key:
        return await store.fetch_admin_history("key", key)
    if device:
        return await store.fetch_admin_history("device", device)
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Either key or device must be provided",
    )


# ============================================================================
# 学科
# ============================================================================

@router.get("/subjects", response_model=List[SubjectResponse])
async def list_subjects(
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    return await store.list_subjects()


@router.post("/subjects", response_model=SubjectResponse, status_code=status.HTTP_201_CREATED)
async def create_subject(
    body: SubjectCreate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    fields = body.model_dump(exclude={"code", "label"})
    try:
        return await store.create_subject(body.code, body.label, **fields)
    except DuplicateCodeError as e:
        raise duplicate(e)


@router.put("/subjects/{code}", response_model=SubjectResponse)
async def update_subject(
    code: str,
    body: SubjectUpdate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    """学科代码不可修改"""
    try:
        return await store.update_subject(code, body.model_dump(exclude_unset=True))
    except RecordNotFoundError as e:
        raise not_found(e)


@router.delete("/subjects/{code}")
async def delete_subject(
    code: str,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        await store.delete_subject(code)
    except RecordNotFoundError as e:
        raise not_found(e)
    return {"success": True}


# ============================================================================
# 年级
# ============================================================================

@router.get("/levels", response_model=List[LevelResponse])
async def list_levels(
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    return await store.list_levels()


@router.post("/levels", response_model=LevelResponse, status_code=status.HTTP_201_CREATED)
async def create_level(
    body: LevelCreate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        return await store.create_level(body.code, body.label, body.sort_order, body.is_active)
    except DuplicateCodeError as e:
        raise duplicate(e)


@router.put("/levels/{code}", response_model=LevelResponse)
async def update_level(
    code: str,
    body: LevelUpdate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        return await store.update_level(code, body.model_dump(exclude_unset=True))
    except RecordNotFoundError as e:
        raise not_found(e)


@router.delete("/levels/{code}")
async def delete_level(
    code: str,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    try:
        await store.delete_level(code)
    except RecordNotFoundError as e:
        raise not_found(e)
    return {"success": True}


# ============================================================================
# 系统配置
# ============================================================================

@router.get("/settings", response_model=Dict[str, str])
async def get_app_settings(
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    """系统配置，密码与 API Key 打码显示"""
    return await create_app_settings_service(store).admin_view()


@router.put("/settings", response_model=Dict[str, str])
async def update_app_settings(
    body: SettingsUpdate,
    admin: str = Depends(get_current_admin),
    store: ConfigurationStore = Depends(get_store),
):
    updates: Dict[str, Optional[str]] = {}
    for key, value in body.model_dump(exclude_none=True).items():
        updates[key] = ("true" if value else "false") if isinstance(value, bool) else str(value)
    return await create_app_settings_service(store).update(updates)
