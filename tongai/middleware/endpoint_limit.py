"""端点级限流（管理员登录等敏感接口）

按 (IP, 路径) 记录最近的请求时间，滑动窗口内超过上限即返回 429。
只在单进程内生效。
"""

import asyncio
import time
from collections import defaultdict, deque
from functools import wraps
from typing import Callable, Deque, Dict

from fastapi import HTTPException, Request, status

from tongai.core.i18n import t
from tongai.core.responses import request_locale


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class EndpointRateLimiter:

    def __init__(self):
        self.hits: Dict[str, Deque[float]] = defaultdict(deque)
        self.lock = asyncio.Lock()

    async def allow(self, ip: str, path: str, max_requests: int, window: int) -> bool:
        now = time.monotonic()
        async with self.lock:
            hits = self.hits[f"{ip}:{path}"]
            while hits and now - hits[0] >= window:
                hits.popleft()
            if len(hits) >= max_requests:
                return False
            hits.append(now)
            return True

    def reset(self) -> None:
        self.hits.clear()


endpoint_limiter = EndpointRateLimiter()


def rate_limit(max_requests: int = 10, window: int = 60):
    """
    被装饰的路由函数必须声明 request: Request 参数

        @router.post("/login")
        @rate_limit(max_requests=10, window=60)
        async def admin_login(request: Request, ...):
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            if request is None:
                request = next((arg for arg in args if isinstance(arg, Request)), None)

            if request is not None and not await endpoint_limiter.allow(
                client_ip(request), request.url.path, max_requests, window
            ):
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail=t("errors.rate_limit", request_locale(request)),
                )

            return await func(*args, **kwargs)
        return wrapper
    return decorator
