"""Telegram 운영 알림 클라이언트"""
from __future__ import annotations

import html
import logging
from typing import Any, Dict, Optional

import httpx

from core.interfaces import INotifier


logger = logging.getLogger(__name__)


TEMPLATES: Dict[str, str] = {
    "cancellation_scheduled": (
        "<b>⚠️ Subscription cancellation scheduled</b>\n"
        "User: {user_id}\n"
        "Plan: {tier} ({billing_cycle})\n"
        "Ends at: {period_end}"
    ),
    "subscription_cancelled": (
        "<b>❌ Subscription cancelled</b>\n"
        "User: {user_id}\n"
        "Previous plan: {tier} ({billing_cycle})\n"
        "Customer: {customer_id}"
    ),
}


class _SafeContext(dict):
    def __missing__(self, key: str) -> str:
        return "-"


def render_template(template: str, **context: Any) -> str:
    """템플릿 렌더링 (HTML 이스케이프, 누락된 값은 '-')"""

    body = TEMPLATES.get(template)
    if body is None:
        raise KeyError(f"알 수 없는 알림 템플릿입니다: {template}")
    escaped = _SafeContext(
        {key: html.escape(str(value)) for key, value in context.items() if value is not None}
    )
    return body.format_map(escaped)


class NotificationClient(INotifier):
    """Telegram Bot API sendMessage 호출

    알림 실패는 정산에 영향을 주지 않으므로 예외를 던지지 않고 False를 반환합니다.
    """

    def __init__(
        self,
        bot_token: Optional[str],
        chat_id: Optional[str],
        base_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
    ) -> None:
        self.bot_token = (bot_token or "").strip() or None
        self.chat_id = (chat_id or "").strip() or None
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send(self, template: str, **context: Any) -> bool:
        if not self.configured:
            logger.info("[NOTIFY] telegram not configured; %s notification skipped", template)
            return False

        try:
            text = render_template(template, **context)
        except KeyError as exc:
            logger.warning("[NOTIFY] %s", exc)
            return False

        url = f"{self.base_url}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload)
        except httpx.RequestError as exc:
            logger.warning("[NOTIFY] telegram network error: template=%s error=%s", template, exc)
            return False

        if response.status_code >= 400:
            logger.warning(
                "[NOTIFY] telegram request failed: template=%s status=%s body=%s",
                template,
                response.status_code,
                response.text[:200],
            )
            return False

        logger.info("[NOTIFY] %s notification sent: user_id=%s", template, context.get("user_id"))
        return True
