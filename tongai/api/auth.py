"""学生端认证 API：访问密钥登录与图片密钥校验"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tongai.core.auth_deps import get_client_identity
from tongai.core.database import get_db
from tongai.core.i18n import t
from tongai.core.responses import localized_http_exception, request_locale
from tongai.services.session_gate import ClientIdentity, SessionGate, SessionState
from tongai.services.store import create_store

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    access_key: str = Field(..., min_length=1, max_length=100)
    device_id: Optional[str] = Field(None, max_length=64)
    location: Optional[str] = Field(None, max_length=200)


class LoginResponse(BaseModel):
    success: bool
    device_id: str
    state: str


class ImageKeyRequest(BaseModel):
    image_key: str = Field(..., min_length=1, max_length=100)


class ImageKeyResponse(BaseModel):
    success: bool


def get_session_gate(db: AsyncSession = Depends(get_db)) -> SessionGate:
    return SessionGate(create_store(db))


@router.post("/login", response_model=LoginResponse)
async def login(
    request: Request,
    login_request: LoginRequest,
    user_agent: Optional[str] = Header(None),
    x_client_location: Optional[str] = Header(None),
    gate: SessionGate = Depends(get_session_gate),
):
    """
    访问密钥登录

    未携带 device_id 时由服务端生成并返回，客户端需保存后在后续请求中通过 X-Device-Id 发送。
    """
    identity = ClientIdentity(
        access_key=login_request.access_key.strip(),
        device_id=login_request.device_id,
        device_info=user_agent,
        location=login_request.location or x_client_location,
    )
    result = await gate.login(identity)

    if not result.success:
        status_code = (
            status.HTTP_401_UNAUTHORIZED
            if result.state in (SessionState.UNREGISTERED, SessionState.DISABLED)
            else status.HTTP_403_FORBIDDEN
        )
        raise HTTPException(
            status_code=status_code,
            detail={
                "message": t(result.error_key, request_locale(request)),
                "state": result.state.value,
                "device_id": result.device_id,
            },
        )

    return LoginResponse(success=True, device_id=result.device_id, state=result.state.value)


@router.post("/image-key", response_model=ImageKeyResponse)
async def verify_image_key(
    request: Request,
    body: ImageKeyRequest,
    identity: ClientIdentity = Depends(get_client_identity),
    gate: SessionGate = Depends(get_session_gate),
):
    """把图片密钥关联到当前设备"""
    if not identity.device_id:
        raise localized_http_exception(request, "errors.not_logged_in", status.HTTP_401_UNAUTHORIZED)

    verified = await gate.verify_image_key(
        body.image_key.strip(), identity.access_key, identity.device_id
    )
    if not verified:
        raise localized_http_exception(request, "errors.invalid_image_key", status.HTTP_403_FORBIDDEN)

    return ImageKeyResponse(success=True)
