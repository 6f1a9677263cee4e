"""권한 정책 계산 테스트"""
from datetime import datetime, timedelta, timezone

from services.entitlement_policy import (
    has_paid_access,
    is_in_grace_period,
    refund_eligibility,
    summarize_entitlement,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _iso(delta_days: float) -> str:
    return (NOW + timedelta(days=delta_days)).isoformat()


def test_past_due_keeps_access_during_grace_period():
    record = {"subscription_status": "past_due", "grace_period_ends_at": _iso(3)}

    assert is_in_grace_period(record, NOW) is True
    assert has_paid_access(record, NOW) is True


def test_past_due_loses_access_after_grace_period():
    record = {"subscription_status": "unpaid", "grace_period_ends_at": _iso(-1)}

    assert is_in_grace_period(record, NOW) is False
    assert has_paid_access(record, NOW) is False


def test_canceling_keeps_access_until_period_end():
    assert has_paid_access({"subscription_status": "canceling", "subscription_period_end": _iso(10)}, NOW) is True
    assert has_paid_access({"subscription_status": "canceling", "subscription_period_end": _iso(-10)}, NOW) is False


def test_canceled_and_missing_records_have_no_access():
    assert has_paid_access({"subscription_status": "canceled"}, NOW) is False
    assert has_paid_access(None, NOW) is False


def test_refund_eligible_inside_window_without_usage():
    record = {
        "external_subscription_id": "sub_1",
        "subscription_started_at": _iso(-3),
        "review_credits_used": 0,
    }

    result = refund_eligibility(record, NOW, window_days=14)

    assert result["eligible"] is True
    assert result["reason"] == "eligible"
    assert result["eligible_until"] == _iso(11)


def test_refund_denied_after_credits_used():
    record = {
        "external_subscription_id": "sub_1",
        "refund_eligible_until": _iso(5),
        "review_credits_used": 1,
    }

    assert refund_eligibility(record, NOW)["reason"] == "credits_used"


def test_refund_denied_after_window_or_without_subscription():
    expired = {"external_subscription_id": "sub_1", "refund_eligible_until": _iso(-1)}

    assert refund_eligibility(expired, NOW)["reason"] == "window_expired"
    assert refund_eligibility({"tier": "free"}, NOW)["reason"] == "no_subscription"


def test_summary_defaults_for_unknown_user():
    summary = summarize_entitlement(None, NOW)

    assert summary["tier"] == "free"
    assert summary["billingCycle"] == "monthly"
    assert summary["reviewCreditsRemaining"] == 0
    assert summary["hasPaidAccess"] is False
    assert summary["refund"]["eligible"] is False


def test_summary_reports_remaining_credits():
    record = {
        "tier": "pro",
        "billing_cycle": "annual",
        "review_credits": 240,
        "review_credits_used": 12,
        "purchased_credits": 5,
        "bonus_prompts": None,
        "subscription_status": "active",
        "external_subscription_id": "sub_1",
    }

    summary = summarize_entitlement(record, NOW)

    assert summary["reviewCreditsRemaining"] == 228
    assert summary["purchasedCredits"] == 5
    assert summary["bonusPrompts"] == 0
    assert summary["hasPaidAccess"] is True
