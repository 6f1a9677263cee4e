"""
결제 API 요청/응답 스키마 정의
프론트엔드가 보내는 camelCase 필드를 그대로 받습니다.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class CheckoutRequest(BaseModel):
    """Checkout 세션 생성 요청"""
    model_config = ConfigDict(populate_by_name=True)

    product_key: str = Field(..., alias="productKey", description="요금제/상품 키 (예: pro_monthly, credits_10)")
    success_url: Optional[str] = Field(None, alias="successUrl", description="결제 성공 후 이동할 URL")
    cancel_url: Optional[str] = Field(None, alias="cancelUrl", description="결제 취소 시 이동할 URL")
    email: Optional[str] = Field(None, description="Checkout에 미리 채울 고객 이메일")


class PortalRequest(BaseModel):
    """결제 포털 세션 생성 요청"""
    model_config = ConfigDict(populate_by_name=True)

    customer_id: Optional[str] = Field(None, alias="customerId", description="Stripe 고객 ID (없으면 저장된 값 사용)")
    return_url: Optional[str] = Field(None, alias="returnUrl", description="포털 종료 후 돌아올 URL")