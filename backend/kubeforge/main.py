import json
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kubeforge.api.router import api_router
from kubeforge.config import get_settings
from kubeforge.core.logging import setup_logging
from kubeforge.core.request_context import request_id_var
from kubeforge.db import dispose_db, init_db
from kubeforge.dependencies import get_kube_clients
from kubeforge.exceptions import register_exception_handlers

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    await init_db()
    logger.info("app.database_ready")
    yield
    get_kube_clients().close()
    await dispose_db()
    logger.info("app.shutdown")


async def request_id_and_envelope(request: Request, call_next):
    """生成 request_id，并把成功的 JSON 响应包装成统一格式。"""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id

    # 仅包装成功的 JSON 响应
    if response.status_code >= 400 or response.status_code == 204:
        return response
    if "application/json" not in response.headers.get("content-type", ""):
        return response

    body = b""
    async for chunk in response.body_iterator:
        body += chunk
    headers = dict(response.headers)
    headers.pop("content-length", None)
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("app.envelope_skipped", path=request.url.path)
        return Response(content=body, status_code=response.status_code, headers=headers)

    # 已经是 envelope 则不重复包装
    if isinstance(payload, dict) and payload.get("success") is True and "request_id" in payload:
        wrapped = payload
    else:
        wrapped = {"success": True, "data": payload, "request_id": request_id}
    return JSONResponse(status_code=response.status_code, content=wrapped, headers=headers)


def create_app() -> FastAPI:
    settings = get_settings()
    # 日志初始化需尽早执行
    setup_logging(settings)

    app = FastAPI(
        title="kubeforge",
        description="Workload manifest synthesis and guarded apply API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.middleware("http")(request_id_and_envelope)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app
