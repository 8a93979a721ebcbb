# 请求日志中间件

import time
import uuid
import logging
from fastapi import FastAPI, Request
from typing import Dict, Any

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def setup_logging_middleware(app: FastAPI, config: Dict[str, Any]):
    """
    请求日志

    沿用上游传入的 X-Request-ID，没有则生成；请求ID存入 request.state
    供异常处理器记录。超过 server.slow_request_ms 的请求记为警告。
    """
    slow_request_ms = config.get('server', {}).get('slow_request_ms', 1000)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.exception(f"[{request_id}] {request.method} {request.url.path} 失败 ({elapsed_ms:.0f}ms)")
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        log = logger.warning if elapsed_ms > slow_request_ms else logger.info
        log(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
