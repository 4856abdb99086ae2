# 应用托管发布控制器 - 异常处理器
"""把发布异常映射为 {code, message, data} 响应"""

from typing import Any, Dict, List, Union

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from .exceptions import RolloutException

logger = structlog.get_logger()


def _envelope(code: int, message: str, data: Any = None, **extra) -> Dict[str, Any]:
    body = {"code": code, "message": message, "data": data}
    body.update(extra)
    return body


def _field_errors(exc: Union[RequestValidationError, ValidationError]) -> List[Dict[str, str]]:
    """展开校验错误，字段路径去掉 body/query 前缀"""
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path"):
            loc = loc[1:]
        errors.append({
            "field": ".".join(loc) or "__root__",
            "message": error.get("msg", "验证失败"),
            "type": error.get("type", ""),
        })
    return errors


async def rollout_exception_handler(request: Request, exc: RolloutException) -> JSONResponse:
    """
    发布异常处理器

    响应体附带 rpc_code，与写入 Rollout.error 的状态码一致。
    """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "发布请求失败",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        code=exc.code,
        rpc_code=exc.rpc_code,
        message=exc.message,
    )
    body = exc.to_dict()
    body["rpc_code"] = exc.rpc_code
    return JSONResponse(status_code=exc.status_code, content=body)


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError]
) -> JSONResponse:
    errors = _field_errors(exc)
    logger.warning("请求参数校验失败", path=request.url.path, errors=errors)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_envelope(422, "请求参数验证失败", errors=errors),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_envelope(exc.status_code, str(exc.detail or "请求错误")),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # 未预期的异常保留堆栈
    logger.exception(
        "未处理的异常",
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_envelope(500, "服务器内部错误"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """注册异常处理器"""
    app.add_exception_handler(RolloutException, rollout_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
