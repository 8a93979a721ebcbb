# CORS中间件配置

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from typing import Dict, Any

DEFAULT_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000"
]


def setup_cors_middleware(app: FastAPI, config: Dict[str, Any]):
    """
    设置CORS中间件

    允许来源取自 server.cors_origins，可以是列表或逗号分隔的字符串
    """
    origins = config.get('server', {}).get('cors_origins') or DEFAULT_ORIGINS
    if isinstance(origins, str):
        origins = [origin.strip() for origin in origins.split(',') if origin.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
