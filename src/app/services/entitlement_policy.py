"""
권한 정책 계산

결제 실패 유예 기간, 유료 기능 접근 여부, 환불 가능 여부를 저장된 권한 레코드로부터 계산합니다.
저장소나 외부 API를 호출하지 않는 순수 함수 모음입니다.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from core.base_service import BaseService
from core.plan_catalog import SubscriptionStatus
from services.entitlement_store import ENTITLEMENT_DEFAULTS

DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_REFUND_WINDOW_DAYS = 14

DELINQUENT_STATUSES = {SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.UNPAID.value}

_parse = BaseService.parse_timestamp


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def grace_period_end(failed_at: datetime, days: int = DEFAULT_GRACE_PERIOD_DAYS) -> datetime:
    return failed_at + timedelta(days=days)


def refund_window_end(started_at: datetime, days: int = DEFAULT_REFUND_WINDOW_DAYS) -> datetime:
    return started_at + timedelta(days=days)


def is_in_grace_period(record: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    """결제 실패 후 유예 기간 안인지 확인"""
    if not record or record.get('subscription_status') not in DELINQUENT_STATUSES:
        return False
    ends_at = _parse(record.get('grace_period_ends_at'))
    return ends_at is not None and _now(now) < ends_at


def has_paid_access(record: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    """유료 기능 사용 가능 여부

    active는 항상 허용, canceling은 현재 결제 기간이 끝날 때까지 허용,
    past_due/unpaid는 유예 기간 동안만 허용합니다.
    """
    if not record:
        return False
    status = record.get('subscription_status')
    if status == SubscriptionStatus.ACTIVE.value:
        return True
    if status == SubscriptionStatus.CANCELING.value:
        period_end = _parse(record.get('subscription_period_end'))
        return period_end is None or _now(now) < period_end
    return is_in_grace_period(record, now)


def refund_eligibility(
    record: Optional[Dict[str, Any]],
    now: Optional[datetime] = None,
    window_days: int = DEFAULT_REFUND_WINDOW_DAYS,
) -> Dict[str, Any]:
    """환불 가능 여부: 구독 시작 후 환불 기간 내이고 리뷰 크레딧을 쓰지 않았을 때"""
    if not record or not record.get('external_subscription_id'):
        return {'eligible': False, 'reason': 'no_subscription', 'eligible_until': None}

    eligible_until = _parse(record.get('refund_eligible_until'))
    if eligible_until is None:
        started_at = _parse(record.get('subscription_started_at'))
        if started_at is not None:
            eligible_until = refund_window_end(started_at, window_days)

    if eligible_until is None or _now(now) > eligible_until:
        reason = 'window_expired'
    elif int(record.get('review_credits_used') or 0) > 0:
        reason = 'credits_used'
    else:
        reason = 'eligible'

    return {
        'eligible': reason == 'eligible',
        'reason': reason,
        'eligible_until': eligible_until.isoformat() if eligible_until else None,
    }


def summarize_entitlement(
    record: Optional[Dict[str, Any]],
    now: Optional[datetime] = None,
    refund_window_days: int = DEFAULT_REFUND_WINDOW_DAYS,
) -> Dict[str, Any]:
    """API 응답용 권한 요약"""
    current = dict(ENTITLEMENT_DEFAULTS)
    current.update({key: value for key, value in (record or {}).items() if value is not None})

    review_credits = int(current.get('review_credits') or 0)
    review_credits_used = int(current.get('review_credits_used') or 0)

    return {
        'tier': current['tier'],
        'billingCycle': current['billing_cycle'],
        'subscriptionStatus': current.get('subscription_status'),
        'cancelAtPeriodEnd': bool(current.get('cancel_at_period_end')),
        'subscriptionPeriodEnd': current.get('subscription_period_end'),
        'reviewCredits': review_credits,
        'reviewCreditsUsed': review_credits_used,
        'reviewCreditsRemaining': max(review_credits - review_credits_used, 0),
        'purchasedCredits': int(current.get('purchased_credits') or 0),
        'bonusPrompts': int(current.get('bonus_prompts') or 0),
        'hasPaidAccess': has_paid_access(current, now),
        'inGracePeriod': is_in_grace_period(current, now),
        'gracePeriodEndsAt': current.get('grace_period_ends_at'),
        'refund': refund_eligibility(current, now, refund_window_days),
    }
