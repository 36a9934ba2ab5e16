"""认证依赖函数

- 管理后台：密码登录后签发 JWT，接口通过 HTTPBearer 校验
- 学生端：通过请求头携带访问密钥和设备 ID
"""

from datetime import datetime, timedelta
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tongai.core.config import get_settings
from tongai.core.i18n import t
from tongai.core.responses import request_locale
from tongai.services.session_gate import ClientIdentity

settings = get_settings()
security = HTTPBearer()

ADMIN_SUBJECT = "admin"


def create_admin_token() -> tuple[str, datetime]:
    """创建管理员 JWT token"""
    expires_at = datetime.utcnow() + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": ADMIN_SUBJECT,
        "role": "admin",
        "exp": expires_at,
    }
    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return token, expires_at


async def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """验证管理员 token"""
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    if payload.get("sub") != ADMIN_SUBJECT:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload["sub"]


async def get_client_identity(
    request: Request,
    x_access_key: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None),
    x_image_key: Optional[str] = Header(None),
    x_client_location: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
) -> ClientIdentity:
    """
    从请求头构造客户端身份（必须携带访问密钥）

    Headers:
        X-Access-Key: 访问密钥
        X-Device-Id: 设备 ID，首次登录时可省略
        X-Image-Key: 图片密钥，仅上传图片时需要
        X-Client-Location: 客户端位置（可选）
    """
    if not x_access_key or not x_access_key.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=t("errors.not_logged_in", request_locale(request)),
        )

    return ClientIdentity(
        access_key=x_access_key.strip(),
        device_id=(x_device_id or "").strip() or None,
        device_info=user_agent,
        location=x_client_location,
        image_key=(x_image_key or "").strip() or None,
    )
