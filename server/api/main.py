# FastAPI主应用

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from utils.config import Config
from utils.errors import MarketplaceError
from utils.logger import setup_logging
from utils.response import create_error_response
from db.manager import DatabaseManager
from api.dependencies import Services, build_services
from api.middleware import setup_middleware

from api.orders import orders_router
from api.businesses import businesses_router
from api.drivers import drivers_router
from api.payments import payments_router
from api.wallet import wallet_router
from api.points import points_router
from api.qr import qr_router

logger = logging.getLogger(__name__)


def create_app(config: Optional[Config] = None, services: Optional[Services] = None) -> FastAPI:
    """
    创建应用

    Args:
        config: 配置，默认按 CONFIG_ENV 加载
        services: 外部服务，默认按配置构建（未配置的服务进入模拟模式）
    """
    config = config or Config()
    setup_logging(config.config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("CoreSY API服务启动中...")
        logger.info(f"环境: {config.env}")
        logger.info(f"调试模式: {config.get('app.debug', False)}")

        db = DatabaseManager(config.get_database_config()["path"], auto_connect=True)
        db.create_schema()
        app.state.config = config
        app.state.db = db
        app.state.services = services or build_services(config)

        yield

        logger.info("CoreSY API服务关闭中...")
        db.close()

    app = FastAPI(
        title=config.get('app.name', 'CoreSY Marketplace API'),
        version=config.get('app.version', '1.0.0'),
        description=config.get('app.description', ''),
        debug=config.get('app.debug', False),
        lifespan=lifespan
    )

    setup_middleware(app, config.config)

    app.include_router(orders_router)
    app.include_router(businesses_router)
    app.include_router(drivers_router)
    app.include_router(payments_router)
    app.include_router(wallet_router)
    app.include_router(points_router)
    app.include_router(qr_router)

    @app.exception_handler(MarketplaceError)
    async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
        """业务异常按类型映射HTTP状态码"""
        logger.info(f"{request.method} {request.url.path} 业务失败: {exc.code} {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content=create_error_response(exc.message, code=exc.code, data=exc.details or None)
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=create_error_response(str(exc.detail))
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=create_error_response("请求参数错误", code="VALIDATION_ERROR",
                                          data={"errors": [str(err.get("msg")) for err in exc.errors()]})
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"未处理的异常: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=create_error_response("服务器内部错误")
        )

    @app.get("/health")
    async def health_check():
        """健康检查：数据库连接与完整性"""
        db: DatabaseManager = app.state.db
        try:
            integrity = db.check_integrity()
        except (RuntimeError, ConnectionError) as e:
            logger.error(f"健康检查失败: {str(e)}")
            return JSONResponse(status_code=503, content=create_error_response("Service unhealthy"))

        return {
            "status": "healthy",
            "version": config.get('app.version'),
            "environment": config.env,
            "database": integrity
        }

    @app.get("/api/info")
    async def api_info():
        return {
            "name": config.get('app.name'),
            "version": config.get('app.version'),
            "environment": config.env,
            "endpoints": {
                "orders": "/api/orders",
                "businesses": "/api/businesses",
                "drivers": "/api/drivers",
                "payments": "/api/payments",
                "wallet": "/api/wallet",
                "points": "/api/points",
                "qr": "/api/qr"
            }
        }

    return app


if __name__ == "__main__":
    import uvicorn

    config = Config()
    server_config = config.config['server']

    uvicorn.run(
        "api.main:create_app",
        factory=True,
        host=server_config.get('host', '127.0.0.1'),
        port=server_config.get('port', 8000),
        reload=server_config.get('reload', False),
        log_level="debug" if config.get('app.debug') else "info"
    )
