"""
전역 예외 처리 미들웨어
"""
from fastapi import Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from core.responses import error_response, BusinessException

logger = logging.getLogger(__name__)

async def business_exception_handler(request: Request, exc: BusinessException):
    """비즈니스 예외 처리기"""
    logger.warning(f"Business exception: {exc.message} ({exc.error_code})")

    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(
            message=exc.message,
            error_code=exc.error_code
        ).model_dump()
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
    app.add_exception_handler(Exception, general_exception_handler)

def setup_cors(app, origins: list[str]):
    """CORS 설정 - 함수별 Access-Control 헤더 대신 공통 처리"""
    allow_all = not origins or "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else origins,
        allow_credentials=not allow_all,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Stripe-Signature"],
    )
