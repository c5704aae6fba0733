"""
전역 예외 처리 미들웨어
"""
from typing import Callable

from fastapi import Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.routing import APIRoute
import logging

from core.responses import error_response, BusinessException, AuthenticationException

logger = logging.getLogger(__name__)

CLIENT_ACTION_ERROR_STATUS = 400


def _log_business_exception(request: Request, exc: BusinessException) -> None:
    if exc.status_code >= 500:
        logger.error("Business exception on %s: %s", request.url.path, exc.message)
    else:
        logger.warning("Business exception on %s: %s", request.url.path, exc.message)


def _business_error_body(exc: BusinessException) -> dict:
    message = exc.message
    if isinstance(exc, AuthenticationException):
        # 인증 실패 사유는 서버 로그에만 남긴다
        message = AuthenticationException().message
    return error_response(message=message, error_code=exc.error_code).model_dump()


async def business_exception_handler(request: Request, exc: BusinessException):
    """비즈니스 예외 처리기"""
    _log_business_exception(request, exc)

    return JSONResponse(
        status_code=exc.status_code,
        content=_business_error_body(exc)
    )

async def http_exception_handler_custom(request: Request, exc: HTTPException):
    """HTTP 예외 처리기"""
    logger.warning(f"HTTP exception: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(
            message=str(exc.detail),
            error_code="HTTP_ERROR"
        ).model_dump()
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """요청 본문 검증 실패 처리기 (400)"""
    logger.warning("Request validation failed on %s: %s", request.url.path, exc.errors())

    return JSONResponse(
        status_code=400,
        content=error_response(
            message="입력 데이터가 유효하지 않습니다",
            error_code="VALIDATION_ERROR"
        ).model_dump()
    )

async def general_exception_handler(request: Request, exc: Exception):
    """일반 예외 처리기"""
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content=error_response(
            message="내부 서버 오류가 발생했습니다",
            error_code="INTERNAL_SERVER_ERROR"
        ).model_dump()
    )

def setup_exception_handlers(app):
    """예외 처리기 설정"""
    app.add_exception_handler(BusinessException, business_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler_custom)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)


class ClientActionRoute(APIRoute):
    """앱 클라이언트 액션 라우트

    클라이언트는 성공/실패만 구분하므로 실패는 모두 400 과 {error} 로 응답한다.
    실패 분류는 error_code 에 남는다.
    """

    def get_route_handler(self) -> Callable:
        route_handler = super().get_route_handler()

        async def client_action_handler(request: Request) -> Response:
            try:
                return await route_handler(request)
            except BusinessException as exc:
                _log_business_exception(request, exc)
                body = _business_error_body(exc)
            except RequestValidationError as exc:
                logger.warning("Request validation failed on %s: %s", request.url.path, exc.errors())
                body = error_response(
                    message="입력 데이터가 유효하지 않습니다",
                    error_code="VALIDATION_ERROR"
                ).model_dump()
            except HTTPException as exc:
                logger.warning(f"HTTP exception on {request.url.path}: {exc.status_code} - {exc.detail}")
                body = error_response(
                    message=str(exc.detail),
                    error_code="HTTP_ERROR"
                ).model_dump()
            except Exception as exc:
                logger.error(f"Unhandled exception in client action {request.url.path}: {str(exc)}", exc_info=True)
                body = error_response(
                    message="요청을 처리하지 못했습니다",
                    error_code="INTERNAL_SERVER_ERROR"
                ).model_dump()

            return JSONResponse(
                status_code=CLIENT_ACTION_ERROR_STATUS,
                content={**body, "success": False}
            )

        return client_action_handler
