"""
결제 관련 API 라우터
Stripe Checkout / 결제 포털 세션 생성 및 현재 사용자 권한 조회
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.config import settings
from core.factory import ServiceFactory
from core.interfaces import IEntitlementStore
from core.plan_catalog import PlanCatalog, PriceEntry
from core.responses import (
    AuthenticationException,
    BusinessException,
    ExternalServiceException,
    success_response,
)
from schemas import CheckoutRequest, PortalRequest
from services.auth_service import AuthService
from services.entitlement_policy import summarize_entitlement
from services.stripe_gateway import StripeGateway, StripeGatewayError

logger = logging.getLogger(__name__)

# 라우터 생성
router = APIRouter(prefix="/api/v1/billing", tags=["billing"])
security = HTTPBearer(auto_error=False)


def get_auth_service() -> AuthService:
    return ServiceFactory.get_auth_service()


def get_stripe_gateway() -> StripeGateway:
    return ServiceFactory.get_stripe_gateway()


def get_plan_catalog() -> PlanCatalog:
    return ServiceFactory.get_plan_catalog()


def get_entitlement_store() -> IEntitlementStore:
    return ServiceFactory.get_entitlement_store()


async def get_optional_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth_service: AuthService = Depends(get_auth_service),
) -> Optional[str]:
    """토큰이 있으면 사용자 ID, 없으면 None"""
    return await auth_service.resolve_user_id(credentials)


async def get_current_user_id(user_id: Optional[str] = Depends(get_optional_user_id)) -> str:
    """로그인 필수 의존성"""
    if not user_id:
        raise AuthenticationException("로그인이 필요합니다")
    return user_id


def build_checkout_params(
    entry: PriceEntry,
    catalog: PlanCatalog,
    user_id: str,
    request: CheckoutRequest,
    site_url: str,
) -> Dict[str, Any]:
    """Checkout 세션 생성 파라미터 구성

    웹훅에서 사용자를 찾을 수 있도록 세션 메타데이터(및 구독 메타데이터)에 userId를 담습니다.
    """
    site_url = site_url.rstrip("/")
    metadata: Dict[str, str] = {"userId": user_id, "productKey": entry.product_key}
    if entry.credits:
        metadata["credits"] = str(entry.credits)
    if entry.prompts:
        metadata["prompts"] = str(entry.prompts)

    params: Dict[str, Any] = {
        "mode": "subscription" if entry.is_subscription else "payment",
        "line_items": [{"price": entry.price_id, "quantity": 1}],
        "success_url": request.success_url or f"{site_url}/?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": request.cancel_url or f"{site_url}/?payment=cancelled",
        "metadata": metadata,
        "allow_promotion_codes": True,
        "billing_address_collection": "auto",
    }

    if entry.is_subscription:
        metadata["tier"] = entry.tier.value
        metadata["billingCycle"] = entry.billing_cycle.value
        metadata["credits"] = str(catalog.grant_for(entry.tier, entry.billing_cycle))
        params["subscription_data"] = {
            "metadata": {
                "userId": user_id,
                "tier": entry.tier.value,
                "billingCycle": entry.billing_cycle.value,
            }
        }

    if request.email:
        params["customer_email"] = request.email

    return params


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    """Stripe Checkout 세션 생성"""
    entry = catalog.entry_for_product(request.product_key)
    if entry is None or not entry.price_id:
        raise BusinessException(f"알 수 없는 상품입니다: {request.product_key}", "UNKNOWN_PRODUCT", 400)

    buyer = user_id or settings.ANONYMOUS_USER_ID
    params = build_checkout_params(entry, catalog, buyer, request, settings.PUBLIC_SITE_URL)

    try:
        session = await gateway.create_checkout_session(**params)
    except StripeGatewayError as e:
        raise ExternalServiceException("Stripe", str(e))

    logger.info(
        "[STRIPE] checkout session created: session=%s product=%s user_id=%s",
        session.get("id"),
        entry.product_key,
        buyer,
    )
    return success_response(
        data={"sessionId": session.get("id"), "url": session.get("url")},
        message="Checkout 세션이 생성되었습니다",
    )


@router.post("/portal")
async def create_portal_session(
    request: PortalRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    store: IEntitlementStore = Depends(get_entitlement_store),
):
    """결제 포털 세션 생성 (로그인 사용자는 저장된 고객 ID 우선)"""
    customer_id = None
    if user_id:
        record = await store.get_entitlement(user_id)
        customer_id = (record or {}).get("external_customer_id")
    customer_id = customer_id or request.customer_id

    if not customer_id:
        raise BusinessException("결제 고객 정보가 없습니다", "CUSTOMER_NOT_FOUND", 400)

    return_url = request.return_url or f"{settings.PUBLIC_SITE_URL.rstrip('/')}/"
    try:
        session = await gateway.create_portal_session(customer_id, return_url)
    except StripeGatewayError as e:
        raise ExternalServiceException("Stripe", str(e))

    return success_response(data={"url": session.get("url")}, message="결제 포털 세션이 생성되었습니다")


@router.get("/entitlement")
async def get_entitlement(
    user_id: str = Depends(get_current_user_id),
    store: IEntitlementStore = Depends(get_entitlement_store),
):
    """현재 사용자 권한 요약 (유예 기간/환불 가능 여부 포함)"""
    record = await store.get_entitlement(user_id)
    summary = summarize_entitlement(record, refund_window_days=settings.REFUND_WINDOW_DAYS)
    summary["transactions"] = await store.list_transactions(user_id, limit=10)
    return success_response(data=summary, message="권한 정보를 조회했습니다")
