"""정산 실패를 로그 및 system_logs에 구조화해 기록"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from core.interfaces import IEntitlementStore
from core.responses import BusinessException
from services.stripe_gateway import StripeGatewayError

logger = logging.getLogger(__name__)


class ErrorReporter:
    """삼킨 예외를 관측 가능하게 남기는 수집기

    응답 계약(웹훅은 항상 200)은 바꾸지 않고, 실패마다 correlation id를 발급해
    애플리케이션 로그와 system_logs 테이블 양쪽에 남깁니다.
    """

    def __init__(self, store: Optional[IEntitlementStore] = None):
        self.store = store

    async def report(
        self,
        action: str,
        error: Exception,
        *,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
        level: int = logging.ERROR,
        **context: Any,
    ) -> str:
        correlation_id = uuid4().hex
        event_payload: Dict[str, Any] = {
            "correlation_id": correlation_id,
            "action": action,
            "error_type": self._classify(error),
            "message": str(error),
        }

        if isinstance(error, StripeGatewayError):
            event_payload.update(
                {
                    "status_code": error.status_code,
                    "stripe_code": error.code,
                }
            )
        elif isinstance(error, BusinessException):
            event_payload["error_code"] = error.error_code

        if event_id:
            event_payload["event_id"] = event_id
        for key, value in context.items():
            if value is not None:
                event_payload[key] = value

        logger.log(
            level,
            "[ENTITLEMENT] %s failed: user_id=%s event_id=%s correlation_id=%s error=%s",
            action,
            user_id,
            event_id,
            correlation_id,
            error,
        )

        if self.store is not None:
            try:
                await self.store.log_system_event(
                    user_id=user_id,
                    event_type=f"{action}_failed",
                    event_data=event_payload,
                )
            except Exception as log_error:  # pragma: no cover - 로깅 실패는 치명적이지 않음
                logger.warning(
                    "시스템 로그 기록 실패: action=%s correlation_id=%s error=%s",
                    action,
                    correlation_id,
                    log_error,
                )

        return correlation_id

    @staticmethod
    def _classify(error: Exception) -> str:
        if isinstance(error, StripeGatewayError):
            return "stripe_api"
        if isinstance(error, BusinessException) and error.error_code:
            return error.error_code.lower()
        return "unexpected"
