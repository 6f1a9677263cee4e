"""
서비스 인터페이스 정의
"""
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List


class IAuthService(ABC):
    """인증 서비스 인터페이스"""

    @abstractmethod
    async def verify_auth(self, credentials) -> Any:
        """토큰 검증"""
        pass


class IEntitlementStore(ABC):
    """사용자 권한(구독/크레딧) 저장소 인터페이스

    user_id로 키가 지정된 문서 저장소. 쓰기는 항상 부분 병합이며 전체 덮어쓰기는 하지 않습니다.
    """

    @abstractmethod
    async def get_entitlement(self, user_id: str) -> Optional[Dict[str, Any]]:
        """권한 레코드 조회 (없으면 None)"""
        pass

    @abstractmethod
    async def merge_entitlement(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """지정한 필드만 병합 기록 (레코드가 없으면 생성)"""
        pass

    @abstractmethod
    async def append_transaction(self, user_id: str, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """거래 로그 추가 (수정/삭제 없음)"""
        pass

    @abstractmethod
    async def increment_counter(
        self,
        user_id: str,
        field: str,
        amount: int,
        transaction: Dict[str, Any],
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """읽기 후 조건부 쓰기로 누적 카운터 증가, 중복 이벤트면 None"""
        pass

    @abstractmethod
    async def find_user_id_by_subscription(self, subscription_id: str) -> Optional[str]:
        """외부 구독 ID로 사용자 조회"""
        pass

    @abstractmethod
    async def list_transactions(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """최근 거래 로그 조회"""
        pass

    @abstractmethod
    async def log_system_event(self, user_id: str = None, event_type: str = 'info', event_data: Dict[str, Any] = None) -> bool:
        """시스템 이벤트 로깅"""
        pass


class IPaymentGateway(ABC):
    """결제사 API 인터페이스 (정산에 필요한 최소 계약)"""

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def retrieve_price(self, price_id: str, expand_product: bool = True) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def list_line_items(self, session_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        pass


class INotifier(ABC):
    """알림 전송 인터페이스 (실패해도 예외를 던지지 않음)"""

    @abstractmethod
    async def send(self, template: str, **context: Any) -> bool:
        pass
