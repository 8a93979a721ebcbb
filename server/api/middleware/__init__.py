# 中间件

from fastapi import FastAPI
from typing import Dict, Any

from .cors import setup_cors_middleware
from .logging import setup_logging_middleware, REQUEST_ID_HEADER
from .security import setup_security_middleware


def setup_middleware(app: FastAPI, config: Dict[str, Any]):
    """注册顺序即由内到外：CORS 最外层，限流在日志之内"""
    setup_security_middleware(app, config)
    setup_logging_middleware(app, config)
    setup_cors_middleware(app, config)


__all__ = ["setup_middleware", "REQUEST_ID_HEADER"]
