from typing import Any, Dict, Optional
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class AppException(Exception):
    """统一应用异常基类，便于在业务层抛出标准化错误。"""

    def __init__(self, message: str, *, status_code: int = 400, code: str = "APP_ERROR", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}


# ============ manifest 文本/模型错误：阻止状态迁移 ============

class ManifestError(AppException):
    """Manifest 无法被理解时抛出。"""

    def __init__(self, message: str, *, status_code: int = 422, code: str = "MANIFEST_ERROR", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status_code=status_code, code=code, details=details)


class ManifestSyntaxError(ManifestError):
    """YAML/JSON 语法错误，携带出错位置（行列从 1 开始）。"""

    def __init__(self, message: str, *, line: Optional[int] = None, column: Optional[int] = None) -> None:
        details: Dict[str, Any] = {}
        if line is not None:
            details["line"] = line
        if column is not None:
            details["column"] = column
        super().__init__(message, code="MANIFEST_SYNTAX", details=details)
        self.line = line
        self.column = column


class ManifestShapeError(ManifestError):
    """语法正确但不是一个工作负载对象（空文档、非映射、缺少 kind）。"""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="MANIFEST_SHAPE")


class UnsupportedKindError(ManifestError):
    def __init__(self, kind: Any) -> None:
        super().__init__(f"Unsupported workload kind: {kind}", status_code=400, code="UNSUPPORTED_KIND", details={"kind": str(kind)})
        self.kind = kind


class ManifestValidationError(ManifestError):
    """本地预检失败（名称、容器、镜像等），不会发送到集群。"""

    def __init__(self, issues: list[Dict[str, str]]) -> None:
        first = issues[0]["message"] if issues else "Manifest is invalid"
        super().__init__(first, code="MANIFEST_INVALID", details={"issues": issues})
        self.issues = issues


class WorkflowStateError(AppException):
    """非法的工作流状态迁移，例如未确认就提交。"""

    def __init__(self, message: str, *, state: Optional[str] = None) -> None:
        super().__init__(message, status_code=409, code="WORKFLOW_STATE", details={"state": state} if state else None)
        self.state = state


# ============ 集群侧错误：事后报告，不修改编辑缓冲区 ============

class StoreError(AppException):
    pass


class DryRunRejected(StoreError):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status_code=400, code="DRY_RUN_REJECTED", details=details)


class ApplyRejected(StoreError):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status_code=409, code="APPLY_REJECTED", details=details)


class ManifestNotFound(StoreError):
    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found", status_code=404, code="NOT_FOUND")


class StoreUnavailable(StoreError):
    def __init__(self, message: str = "Cluster API is unavailable") -> None:
        super().__init__(message, status_code=503, code="STORE_UNAVAILABLE")


class SessionNotFound(AppException):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Editor session {session_id} not found or expired", status_code=404, code="SESSION_NOT_FOUND")


def _build_error_payload(
    *,
    message: str,
    status_code: int,
    code: str = "APP_ERROR",
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """构建标准化错误响应载荷。"""
    rid = request_id or str(uuid.uuid4())
    return {
        "success": False,
        "error": {
            "message": message,
            "code": code,
            **({"details": details} if details else {}),
        },
        "request_id": rid,
        "status_code": status_code,
    }


def register_exception_handlers(app: FastAPI) -> None:
    """注册全局异常处理器，统一错误响应格式。"""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        message = exc.detail if isinstance(exc.detail, str) else "请求处理失败"
        payload = _build_error_payload(message=message, status_code=exc.status_code, code="HTTP_ERROR", request_id=req_id)
        logger.warning("HTTPException: status=%s path=%s request_id=%s", exc.status_code, request.url.path, req_id)
        return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Request-ID": req_id})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        errors = exc.errors()
        payload = _build_error_payload(
            message="请求参数验证失败",
            status_code=422,
            code="VALIDATION_ERROR",
            details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]},
            request_id=req_id,
        )
        logger.info("ValidationError: path=%s errors=%d request_id=%s", request.url.path, len(errors), req_id)
        return JSONResponse(status_code=422, content=payload, headers={"X-Request-ID": req_id})

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        payload = _build_error_payload(
            message=exc.message,
            status_code=exc.status_code,
            code=exc.code,
            details=exc.details,
            request_id=req_id,
        )
        logger.warning("AppException: status=%s code=%s path=%s request_id=%s", exc.status_code, exc.code, request.url.path, req_id)
        return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Request-ID": req_id})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        logger.exception("UnhandledException: path=%s request_id=%s", request.url.path, req_id)
        payload = _build_error_payload(message="服务器内部错误", status_code=500, code="INTERNAL_SERVER_ERROR", request_id=req_id)
        return JSONResponse(status_code=500, content=payload, headers={"X-Request-ID": req_id})
