"""FastAPI 应用入口"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tongai.api.admin import router as admin_router  # 管理后台
from tongai.api.auth import router as auth_router  # 访问密钥登录
from tongai.api.public import router as public_router  # 首页配置
from tongai.api.tutor import router as tutor_router  # 解题与追问
from tongai.core.config import get_settings
from tongai.core.database import close_db
from tongai.core.responses import localized_error_response
from tongai.middleware.request_size import RequestSizeLimitMiddleware

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    logger.info(f"{settings.app_name} {settings.app_version} starting")

    yield

    # 关闭时 - 释放数据库连接池
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="TongAI 智能辅导 API",
    lifespan=lifespan,
)

# 请求大小限制（图片以 data URI 上传）
app.add_middleware(
    RequestSizeLimitMiddleware,
    max_size=settings.max_request_size,
)

# CORS 中间件（必须在最外层）
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """未处理的异常统一返回 500"""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return localized_error_response(request, "errors.internal_error", status_code=500)


# 注册路由
app.include_router(public_router)
app.include_router(auth_router)
app.include_router(tutor_router)
app.include_router(admin_router)


@app.get("/health")
async def health_check() -> dict:
    """健康检查端点"""
    return {"status": "healthy", "version": settings.app_version}
