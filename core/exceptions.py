"""
全局异常处理器（HTTP 管理接口）
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import traceback
import uuid
from starlette import status as http_status

from .response import error_response
from shared.codes import StatusCode
from core.logging_config import get_logger
from domain.common.exceptions import RelayException


def _status_to_http(code: int) -> int:
    """根据中继状态码映射 HTTP 状态码（默认400）。"""
    mapping = {
        StatusCode.ID_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
        StatusCode.ROOM_NOT_JOINED: http_status.HTTP_404_NOT_FOUND,
        StatusCode.ID_CONFLICT: http_status.HTTP_409_CONFLICT,
        StatusCode.ID_ALREADY_SET: http_status.HTTP_409_CONFLICT,
        StatusCode.REFUSED: http_status.HTTP_403_FORBIDDEN,
        StatusCode.COMMAND_DISABLED: http_status.HTTP_403_FORBIDDEN,
        StatusCode.TOO_LARGE: http_status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        StatusCode.DATATYPE: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
        StatusCode.INTERNAL_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    try:
        return mapping.get(StatusCode(code), http_status.HTTP_400_BAD_REQUEST)
    except ValueError:
        return http_status.HTTP_400_BAD_REQUEST


def _request_id(request: Request) -> str:
    return getattr(getattr(request, "state", object()), "request_id", None) or str(uuid.uuid4())


def register_exception_handlers(app: FastAPI):
    """
    注册全局异常处理器

    Args:
        app: FastAPI应用实例
    """
    logger = get_logger(__name__)

    @app.exception_handler(RelayException)
    async def relay_exception_handler(request: Request, exc: RelayException):
        """处理中继异常"""
        response = error_response(
            code=exc.code,
            message=exc.message,
            error_type=exc.error_type,
            details=exc.details,
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=_status_to_http(exc.code), content=response.model_dump(mode='json'))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理参数验证异常"""
        errors = exc.errors()
        first_error = errors[0] if errors else {}
        response = error_response(
            code=StatusCode.DATATYPE,
            message=f"Validation failed: {first_error.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": [{k: v for k, v in e.items() if k != "ctx"} for e in errors]},
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=response.model_dump(mode='json')
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理HTTP异常"""
        code_mapping = {
            403: StatusCode.REFUSED,
            404: StatusCode.ID_NOT_FOUND,
            413: StatusCode.TOO_LARGE,
            500: StatusCode.INTERNAL_ERROR,
        }
        response = error_response(
            code=code_mapping.get(exc.status_code, StatusCode.INTERNAL_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=response.model_dump(mode='json'),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """处理所有未捕获的异常"""
        request_id = _request_id(request)
        details = None
        if app.debug:
            details = {
                "exception": str(exc),
                "traceback": traceback.format_exc()
            }
        response = error_response(
            code=StatusCode.INTERNAL_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )
        logger.error(
            "unhandled_exception",
            request_id=request_id,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(mode='json')
        )
