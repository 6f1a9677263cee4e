"""
공통 응답 모델 및 예외 클래스
"""
from typing import Generic, TypeVar, Optional, Any
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)

T = TypeVar('T')

class APIResponse(BaseModel, Generic[T]):
    """표준 API 응답 모델"""
    status: str  # "success" or "error"
    data: Optional[T] = None
    message: Optional[str] = None
    error_code: Optional[str] = None

# 커스텀 예외 클래스들
class BusinessException(Exception):
    """비즈니스 로직 예외"""
    def __init__(self, message: str, error_code: str = None, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)

class AuthenticationException(BusinessException):
    """인증 관련 예외"""
    def __init__(self, message: str = "인증에 실패했습니다"):
        super().__init__(message, "AUTH_FAILED", 401)

class NotFoundException(BusinessException):
    """리소스 찾을 수 없음 예외"""
    def __init__(self, message: str = "요청한 리소스를 찾을 수 없습니다"):
        super().__init__(message, "NOT_FOUND", 404)

class ValidationException(BusinessException):
    """입력 검증 예외"""
    def __init__(self, message: str = "입력 데이터가 유효하지 않습니다", errors: list = None):
        super().__init__(message, "VALIDATION_ERROR", 422)
        self.errors = errors or []

class ExternalServiceException(BusinessException):
    """외부 서비스 호출 예외"""
    def __init__(self, service_name: str, message: str = None):
        msg = message or f"{service_name} 서비스 호출에 실패했습니다"
        super().__init__(msg, "EXTERNAL_SERVICE_ERROR", 502)

# 결제 웹훅 처리 예외
class InvalidSignatureException(BusinessException):
    """웹훅 서명 검증 실패 - 처리 없이 거부"""
    def __init__(self, message: str = "invalid signature"):
        super().__init__(message, "INVALID_SIGNATURE", 400)

class MalformedPayloadException(BusinessException):
    """웹훅 본문 해석 실패 - 처리 없이 거부"""
    def __init__(self, message: str = "invalid payload"):
        super().__init__(message, "MALFORMED_PAYLOAD", 400)

class UnresolvableUserException(BusinessException):
    """이벤트에서 사용자를 찾을 수 없음 - 조용히 무시하고 200 응답"""
    def __init__(self, message: str = "no resolvable user for event"):
        super().__init__(message, "UNRESOLVABLE_USER", 200)

class UpstreamLookupException(BusinessException):
    """결제사 조회 실패 - 기존 값으로 계속 진행"""
    def __init__(self, resource: str, message: str = None):
        msg = message or f"{resource} lookup failed"
        super().__init__(msg, "UPSTREAM_LOOKUP_FAILED", 502)
        self.resource = resource

class DatastoreWriteException(BusinessException):
    """권한 저장소 기록 실패 - 기록 후 200 응답 유지"""
    def __init__(self, message: str = "datastore write failed", table: str = None):
        super().__init__(message, "DATASTORE_WRITE_FAILED", 500)
        self.table = table

# 응답 헬퍼 함수들
def success_response(data: Any = None, message: str = "성공") -> APIResponse:
    """성공 응답 생성"""
    return APIResponse(status="success", data=data, message=message)

def error_response(
    message: str = "오류가 발생했습니다",
    error_code: str = None,
    data: Any = None
) -> APIResponse:
    """오류 응답 생성"""
    return APIResponse(
        status="error",
        message=message,
        error_code=error_code,
        data=data
    )
