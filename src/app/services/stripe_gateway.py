"""Stripe API 게이트웨이"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import stripe

from core.interfaces import IPaymentGateway


logger = logging.getLogger(__name__)


class StripeGatewayError(RuntimeError):
    """Stripe API 오류"""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        *,
        code: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.operation = operation

    @classmethod
    def from_stripe_error(cls, operation: str, exc: "stripe.StripeError") -> "StripeGatewayError":
        status_code = getattr(exc, "http_status", None) or 0
        code = getattr(exc, "code", None)
        message = STATUS_MESSAGES.get(status_code) if not code else None
        detail = getattr(exc, "user_message", None) or str(exc) or "Stripe API 요청에 실패했습니다"
        return cls(message or detail, status_code, code=code, operation=operation)


STATUS_MESSAGES: Dict[int, str] = {
    401: "Stripe API 인증에 실패했습니다.",
    403: "Stripe API 접근 권한이 없습니다.",
    404: "요청한 Stripe 리소스를 찾지 못했습니다.",
    429: "Stripe API 호출이 제한되었습니다. 잠시 후 다시 시도하세요.",
}


def to_plain_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject를 일반 dict로 변환"""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripeGateway(IPaymentGateway):
    """Stripe SDK 래퍼 - 호출마다 api_key를 넘겨 전역 stripe.api_key에 의존하지 않음"""

    def __init__(self, api_key: str) -> None:
        if not api_key or not api_key.strip():
            raise ValueError("Stripe 시크릿 키가 설정되지 않았습니다.")
        self.api_key = api_key.strip()

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        # SDK 호출은 동기 HTTP이므로 스레드에서 실행해 이벤트 루프를 막지 않음
        try:
            return await asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as exc:
            error = StripeGatewayError.from_stripe_error(operation, exc)
            logger.error(
                "[STRIPE] API request failed: %s status=%s code=%s error=%s",
                operation,
                error.status_code,
                error.code,
                exc,
            )
            raise error from exc

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """구독 세부 정보를 조회"""

        result = await self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)
        return to_plain_dict(result)

    async def retrieve_price(self, price_id: str, expand_product: bool = True) -> Dict[str, Any]:
        """가격 정보를 조회 (상품 메타데이터 판별을 위해 product 확장)"""

        expand = ["product"] if expand_product else []
        result = await self._call("price.retrieve", stripe.Price.retrieve, price_id, expand=expand)
        return to_plain_dict(result)

    async def list_line_items(self, session_id: str) -> List[Dict[str, Any]]:
        """Checkout 세션의 구매 항목 조회"""

        result = await self._call(
            "checkout.session.list_line_items",
            stripe.checkout.Session.list_line_items,
            session_id,
            limit=100,
        )
        payload = to_plain_dict(result)
        items = payload.get("data") or []
        return [item if isinstance(item, dict) else to_plain_dict(item) for item in items]

    async def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        """구독 메타데이터 갱신 (기존 키는 Stripe가 병합)"""

        result = await self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            metadata=metadata,
        )
        return to_plain_dict(result)

    async def create_checkout_session(self, **params: Any) -> Dict[str, Any]:
        """Checkout 세션 생성"""

        result = await self._call("checkout.session.create", stripe.checkout.Session.create, **params)
        return to_plain_dict(result)

    async def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        """결제 포털 세션 생성"""

        result = await self._call(
            "billing_portal.session.create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return to_plain_dict(result)
