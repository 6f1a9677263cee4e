"""
Stripe 웹훅 수신 검증

- 공유 시크릿이 설정되어 있으면 Stripe-Signature 헤더로 본문을 검증
- 시크릿이 없으면 검증 없이 해석 (개발/저하 모드, 경고 로그)
- 시크릿이 있는데 서명 헤더가 없으면 기본값(strict=True)은 400으로 거부.
  STRIPE_WEBHOOK_STRICT_VERIFY=false면 거부 대신 경고만 남기고 검증 없이 해석 (이전 배포의 동작)
- 결과는 이벤트 타입 + 리소스 객체를 담은 StripeEventEnvelope
저장소를 건드리지 않는 말단 컴포넌트입니다.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from core.responses import InvalidSignatureException, MalformedPayloadException
from services.stripe_gateway import to_plain_dict

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StripeEventEnvelope:
    type: str
    data: Dict[str, Any]
    id: Optional[str] = None
    created: Optional[int] = None
    verified: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


class StripeWebhookVerifier:
    """서명 검증 및 이벤트 해석"""

    def __init__(self, webhook_secret: Optional[str], strict: bool = True, tolerance: int = 300):
        self.webhook_secret = (webhook_secret or "").strip() or None
        self.strict = strict
        self.tolerance = tolerance

    def verify_and_decode(self, payload: bytes, signature: Optional[str]) -> StripeEventEnvelope:
        if self.webhook_secret and signature:
            try:
                event = stripe.Webhook.construct_event(
                    payload,
                    signature,
                    self.webhook_secret,
                    tolerance=self.tolerance,
                )
            except stripe.SignatureVerificationError as exc:
                logger.error("[STRIPE] signature mismatch: %s", exc)
                raise InvalidSignatureException(f"Webhook signature verification failed: {exc}") from exc
            except ValueError as exc:
                logger.error("[STRIPE] invalid webhook payload: %s", exc)
                raise MalformedPayloadException(f"invalid payload: {exc}") from exc
            return self._envelope(to_plain_dict(event), verified=True)

        if self.webhook_secret:
            if self.strict:
                logger.warning("[STRIPE] missing Stripe-Signature header")
                raise InvalidSignatureException("missing Stripe-Signature header")
            logger.warning("[STRIPE] Stripe-Signature header missing; webhook signature verification skipped")
        else:
            logger.warning("[STRIPE] webhook secret not configured; webhook signature verification skipped")

        return self._envelope(self._decode(payload), verified=False)

    @staticmethod
    def _decode(payload: bytes) -> Dict[str, Any]:
        try:
            raw = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
            decoded = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as exc:
            raise MalformedPayloadException(f"invalid json: {exc}") from exc
        if not isinstance(decoded, dict):
            raise MalformedPayloadException("event payload must be a JSON object")
        return decoded

    @staticmethod
    def _envelope(event: Dict[str, Any], *, verified: bool) -> StripeEventEnvelope:
        event_type = event.get("type")
        if not isinstance(event_type, str) or not event_type.strip():
            raise MalformedPayloadException("event type missing")

        data = event.get("data")
        resource = data.get("object") if isinstance(data, dict) else None
        if not isinstance(resource, dict):
            raise MalformedPayloadException("event data.object missing")

        created = event.get("created")
        return StripeEventEnvelope(
            type=event_type.strip(),
            data=resource,
            id=event.get("id"),
            created=created if isinstance(created, int) else None,
            verified=verified,
            raw=event,
        )
