# 安全中间件：响应头、请求体大小、限流

import time
import logging
from collections import deque
from typing import Deque, Dict, Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from utils.response import create_error_response

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}
RATE_WINDOW_SECONDS = 60


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class SlidingWindowLimiter:
    """
    进程内滑动窗口限流，按客户端计数。
    每过一个窗口清理一次已无近期请求的客户端，避免记录无限增长。
    """

    def __init__(self, limit: int, window_seconds: float = RATE_WINDOW_SECONDS):
        self.limit = limit
        self.window_seconds = window_seconds
        self.recent_requests: Dict[str, Deque[float]] = {}
        self._last_sweep = 0.0

    def allow(self, key: str, now: float) -> bool:
        if now - self._last_sweep >= self.window_seconds:
            self.sweep(now)

        window = self.recent_requests.get(key)
        if window is None:
            window = self.recent_requests[key] = deque()
        while window and now - window[0] >= self.window_seconds:
            window.popleft()

        if len(window) >= self.limit:
            if not window:
                del self.recent_requests[key]
            return False

        window.append(now)
        return True

    def sweep(self, now: float):
        stale = [key for key, window in self.recent_requests.items()
                 if not window or now - window[-1] >= self.window_seconds]
        for key in stale:
            del self.recent_requests[key]
        self._last_sweep = now


def setup_security_middleware(app: FastAPI, config: Dict[str, Any]):
    """
    读取 server.max_request_size 与 server.rate_limit_per_minute
    """
    server_config = config.get('server', {})
    max_request_size = server_config.get('max_request_size', 1024 * 1024)
    rate_limit = server_config.get('rate_limit_per_minute', 100)
    limiter = SlidingWindowLimiter(rate_limit)
    app.state.rate_limiter = limiter

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        # 钱包、订单等接口返回个人数据
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
        return response

    @app.middleware("http")
    async def guard_request(request: Request, call_next):
        content_length = request.headers.get('content-length', '')
        if content_length.isdigit() and int(content_length) > max_request_size:
            logger.warning(f"请求体 {content_length} 字节超过上限 {max_request_size}")
            return JSONResponse(status_code=413,
                                content=create_error_response("请求体过大", code="REQUEST_TOO_LARGE"))

        key = _client_key(request)
        if not limiter.allow(key, time.monotonic()):
            logger.warning(f"客户端 {key} 超过限流 {rate_limit}/分钟")
            return JSONResponse(status_code=429,
                                content=create_error_response("请求过于频繁", code="RATE_LIMITED"))

        return await call_next(request)
