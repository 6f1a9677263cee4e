"""
Stripe 이벤트 -> 사용자 권한 정산

이벤트 타입별 정산 루틴
- checkout.session.completed: 구독 시작 / 크레딧 팩 / 채팅 충전 / 상담 예약
- invoice.paid: 구독 갱신 (최초 청구서는 checkout에서 처리하므로 건너뜀)
- invoice.payment_failed: past_due 전환 및 유예 기간 기록
- customer.subscription.deleted: free 등급으로 전환
- customer.subscription.updated: 결제 문제 / 해지 예약 / 해지 취소 / 요금제 변경

모든 쓰기는 user_entitlements에 대한 부분 병합이며, 상태 전이마다 거래 로그를 1건 남깁니다.
루틴 안의 예외는 ErrorReporter로 기록하고 밖으로 전파하지 않습니다.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.base_service import BaseService
from core.interfaces import IEntitlementStore, INotifier, IPaymentGateway
from core.plan_catalog import BillingCycle, PlanCatalog, PriceEntry, ProductKind, SubscriptionStatus, Tier
from core.responses import UnresolvableUserException, UpstreamLookupException
from services.entitlement_policy import (
    DEFAULT_GRACE_PERIOD_DAYS,
    DEFAULT_REFUND_WINDOW_DAYS,
    grace_period_end,
    refund_window_end,
)
from services.error_reporter import ErrorReporter
from services.stripe_gateway import StripeGatewayError
from services.webhook_verifier import StripeEventEnvelope

USER_ID_KEYS = ("userId", "user_id", "uid")
DELINQUENT = {SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.UNPAID.value}


@dataclass(slots=True)
class ReconcileOutcome:
    event_type: str
    status: str
    user_id: Optional[str] = None
    transaction: Optional[str] = None
    error: Optional[str] = None
    correlation_id: Optional[str] = None


def _get(d: Any, *keys: str, default=None):
    cur = d
    for k in keys:
        if not isinstance(cur, dict):
            return default
        cur = cur.get(k)
    return default if cur is None else cur


class EntitlementReconciler(BaseService):
    """결제 이벤트를 권한 레코드 상태 전이로 변환"""

    ROUTINES: Dict[str, str] = {
        "checkout.session.completed": "checkout",
        "invoice.paid": "renewal",
        "invoice.payment_failed": "payment_failed",
        "customer.subscription.deleted": "subscription_cancelled",
        "customer.subscription.updated": "subscription_updated",
    }

    def __init__(
        self,
        store: IEntitlementStore,
        gateway: IPaymentGateway,
        catalog: PlanCatalog,
        notifier: Optional[INotifier] = None,
        error_reporter: Optional[ErrorReporter] = None,
        *,
        anonymous_user_id: str = "anonymous",
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
        refund_window_days: int = DEFAULT_REFUND_WINDOW_DAYS,
    ):
        super().__init__(store)
        self.gateway = gateway
        self.catalog = catalog
        self.notifier = notifier
        self.error_reporter = error_reporter or ErrorReporter(store)
        self.anonymous_user_id = anonymous_user_id
        self.grace_period_days = grace_period_days
        self.refund_window_days = refund_window_days

        self._handlers: Dict[str, Callable[[StripeEventEnvelope], Awaitable[ReconcileOutcome]]] = {
            "checkout": self._handle_checkout_completed,
            "renewal": self._handle_invoice_paid,
            "payment_failed": self._handle_payment_failed,
            "subscription_cancelled": self._handle_subscription_deleted,
            "subscription_updated": self._handle_subscription_updated,
        }

    async def reconcile(self, event: StripeEventEnvelope) -> ReconcileOutcome:
        """이벤트 타입에 맞는 정산 루틴 실행 (예외는 outcome.error로만 노출)"""
        routine = self.ROUTINES.get(event.type)
        if routine is None:
            self.logger.info("[STRIPE] unhandled event ignored: type=%s id=%s", event.type, event.id)
            return ReconcileOutcome(event.type, "ignored")

        self.logger.info("[STRIPE] event received: type=%s id=%s verified=%s", event.type, event.id, event.verified)
        try:
            return await self._handlers[routine](event)
        except UnresolvableUserException as exc:
            self.logger.info("[ENTITLEMENT] %s skipped: %s (event_id=%s)", routine, exc.message, event.id)
            return ReconcileOutcome(event.type, "skipped")
        except Exception as exc:
            correlation_id = await self.error_reporter.report(
                f"stripe_{routine}",
                exc,
                event_id=event.id,
                event_type=event.type,
                resource_id=event.data.get("id"),
            )
            return ReconcileOutcome(
                event.type,
                "failed",
                error=f"{routine} processing failed (correlation_id={correlation_id})",
                correlation_id=correlation_id,
            )

    # --- checkout.session.completed ---

    async def _handle_checkout_completed(self, event: StripeEventEnvelope) -> ReconcileOutcome:
        session = event.data
        user_id = self.user_id_from_metadata(session.get("metadata"))
        if not user_id:
            raise UnresolvableUserException(f"no valid user id in checkout session {session.get('id')}")

        correlation_id = self._correlation_id(event)
        purchases = await self._checkout_purchases(session, event)
        if not purchases:
            self.logger.warning("[STRIPE] checkout %s has no recognised products", session.get("id"))
            return ReconcileOutcome(event.type, "skipped", user_id=user_id)

        record = await self.store.get_entitlement(user_id) or {}
        self._log_if_redelivered(record, correlation_id, user_id)

        applied: List[str] = []
        duplicates = 0

        for entry, _ in purchases:
            if entry.is_subscription:
                await self._activate_subscription(user_id, entry, session, record, correlation_id, event)
                applied.append("subscription_started")

        counters = (
            (ProductKind.CREDIT_PACK, "purchased_credits", "credit_pack", "credits"),
            (ProductKind.CHAT_TOPUP, "bonus_prompts", "chat_topup", "prompts"),
        )
        for kind, field, transaction_type, unit in counters:
            matched = [(entry, qty) for entry, qty in purchases if entry.kind is kind]
            if not matched:
                continue
            amount = sum(getattr(entry, unit) * qty for entry, qty in matched)
            new_value = await self.store.increment_counter(
                user_id,
                field,
                amount,
                {
                    "type": transaction_type,
                    "correlation_id": correlation_id,
                    "details": {
                        unit: amount,
                        "products": [entry.product_key for entry, _ in matched],
                        "session_id": session.get("id"),
                    },
                },
                extra_fields={"last_transaction": correlation_id},
            )
            if new_value is None:
                duplicates += 1
                continue
            self.logger.info("[ENTITLEMENT] %s: +%s %s for %s (total=%s)", transaction_type, amount, field, user_id, new_value)
            applied.append(transaction_type)

        if any(entry.kind is ProductKind.CONSULTATION for entry, _ in purchases):
            await self.store.merge_entitlement(user_id, {"last_transaction": correlation_id})
            await self.store.append_transaction(
                user_id,
                {
                    "type": "consultation_booked",
                    "correlation_id": correlation_id,
                    "details": {
                        "session_id": session.get("id"),
                        "amount_total": session.get("amount_total"),
                        "customer_email": _get(session, "customer_details", "email"),
                    },
                },
            )
            applied.append("consultation_booked")

        if not applied and duplicates:
            return ReconcileOutcome(event.type, "duplicate", user_id=user_id)
        return ReconcileOutcome(event.type, "applied", user_id=user_id, transaction=",".join(applied))

    async def _checkout_purchases(
        self,
        session: Dict[str, Any],
        event: StripeEventEnvelope,
    ) -> List[Tuple[PriceEntry, int]]:
        """구매 항목 조회 - 실패하거나 비어 있으면 세션 메타데이터의 productKey 사용"""
        purchases: List[Tuple[PriceEntry, int]] = []
        session_id = session.get("id")

        if session_id:
            try:
                line_items = await self.gateway.list_line_items(session_id)
            except StripeGatewayError as exc:
                await self._report_upstream("checkout.line_items", exc, event)
                line_items = []

            for item in line_items:
                price_id = _get(item, "price", "id")
                entry = self.catalog.entry_for_price(price_id)
                if entry is None:
                    self.logger.info("[STRIPE] unknown price in checkout %s: %s", session_id, price_id)
                    continue
                purchases.append((entry, int(item.get("quantity") or 1)))

        if not purchases:
            entry = self.catalog.entry_for_product(_get(session, "metadata", "productKey"))
            if entry is not None:
                purchases.append((entry, 1))
        return purchases

    async def _activate_subscription(
        self,
        user_id: str,
        entry: PriceEntry,
        session: Dict[str, Any],
        record: Dict[str, Any],
        correlation_id: str,
        event: StripeEventEnvelope,
    ) -> None:
        subscription_id = session.get("subscription")
        customer_id = session.get("customer")
        subscription = await self._fetch_subscription(subscription_id, event) if subscription_id else None

        tier, billing_cycle = entry.tier, entry.billing_cycle
        credits = self.catalog.grant_for(tier, billing_cycle)
        now = self.utcnow()

        started_at = now
        if subscription_id and record.get("external_subscription_id") == subscription_id:
            started_at = self.parse_timestamp(record.get("subscription_started_at")) or now

        fields: Dict[str, Any] = {
            "tier": tier.value,
            "billing_cycle": billing_cycle.value,
            "review_credits": credits,
            "review_credits_used": 0,
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "cancel_at_period_end": False,
            "cancellation_effective_at": None,
            "subscription_period_end": self.isoformat(self._period_end(subscription)),
            "subscription_started_at": started_at.isoformat(),
            "refund_eligible_until": refund_window_end(started_at, self.refund_window_days).isoformat(),
            "subscription_ended_at": None,
            "payment_failed_at": None,
            "grace_period_ends_at": None,
            "last_credit_refresh": now.isoformat(),
            "last_transaction": correlation_id,
        }
        if subscription_id:
            fields["external_subscription_id"] = subscription_id
        if customer_id:
            fields["external_customer_id"] = customer_id

        await self.store.merge_entitlement(user_id, fields)
        await self.store.append_transaction(
            user_id,
            {
                "type": "subscription_started",
                "correlation_id": correlation_id,
                "details": {
                    "tier": tier.value,
                    "billing_cycle": billing_cycle.value,
                    "credits": credits,
                    "subscription_id": subscription_id,
                    "session_id": session.get("id"),
                },
            },
        )
        self.logger.info(
            "[ENTITLEMENT] subscription started: user_id=%s tier=%s cycle=%s credits=%s",
            user_id,
            tier.value,
            billing_cycle.value,
            credits,
        )

        if subscription_id:
            await self._sync_subscription_metadata(subscription_id, user_id, tier, billing_cycle, event)

    # --- invoice.paid ---

    async def _handle_invoice_paid(self, event: StripeEventEnvelope) -> ReconcileOutcome:
        invoice = event.data
        if invoice.get("billing_reason") == "subscription_create":
            self.logger.info("[STRIPE] initial invoice %s skipped (handled by checkout)", invoice.get("id"))
            return ReconcileOutcome(event.type, "skipped")

        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            self.logger.info("[STRIPE] invoice %s is not for a subscription", invoice.get("id"))
            return ReconcileOutcome(event.type, "skipped")

        subscription = await self._fetch_subscription(subscription_id, event)
        user_id = await self._resolve_user_id(
            subscription_id,
            _get(subscription, "metadata"),
            self._invoice_subscription_metadata(invoice),
        )

        correlation_id = self._correlation_id(event)
        record = await self.store.get_entitlement(user_id) or {}
        self._log_if_redelivered(record, correlation_id, user_id)

        if self._is_superseded(record, subscription_id):
            self.logger.info(
                "[ENTITLEMENT] renewal for superseded subscription %s ignored for user_id=%s",
                subscription_id,
                user_id,
            )
            return ReconcileOutcome(event.type, "skipped", user_id=user_id)

        plan = await self._resolve_subscription_plan(subscription, event) if subscription else None
        if plan:
            tier, billing_cycle = plan
        else:
            tier = Tier.parse(record.get("tier"))
            billing_cycle = BillingCycle.parse(record.get("billing_cycle")) or BillingCycle.MONTHLY

        if tier is None or tier is Tier.FREE:
            self.logger.warning(
                "[ENTITLEMENT] renewal skipped: no paid plan for user_id=%s subscription=%s",
                user_id,
                subscription_id,
            )
            return ReconcileOutcome(event.type, "skipped", user_id=user_id)

        credits = self.catalog.grant_for(tier, billing_cycle)
        now = self.utcnow()
        previous_status = record.get("subscription_status")
        status = SubscriptionStatus.CANCELING if record.get("cancel_at_period_end") else SubscriptionStatus.ACTIVE

        fields: Dict[str, Any] = {
            "tier": tier.value,
            "billing_cycle": billing_cycle.value,
            "review_credits": credits,
            "review_credits_used": 0,
            "subscription_status": status.value,
            "external_subscription_id": subscription_id,
            "payment_failed_at": None,
            "grace_period_ends_at": None,
            "last_credit_refresh": now.isoformat(),
            "last_transaction": correlation_id,
        }
        period_end = self._period_end(subscription)
        if period_end:
            fields["subscription_period_end"] = period_end.isoformat()
        if invoice.get("customer"):
            fields["external_customer_id"] = invoice["customer"]

        await self.store.merge_entitlement(user_id, fields)
        await self.store.append_transaction(
            user_id,
            {
                "type": "subscription_renewal",
                "correlation_id": correlation_id,
                "details": {
                    "tier": tier.value,
                    "billing_cycle": billing_cycle.value,
                    "credits": credits,
                    "invoice_id": invoice.get("id"),
                    "previous_status": previous_status,
                },
            },
        )
        self.logger.info(
            "[ENTITLEMENT] renewal: user_id=%s tier=%s cycle=%s credits=%s previous_status=%s",
            user_id,
            tier.value,
            billing_cycle.value,
            credits,
            previous_status,
        )
        return ReconcileOutcome(event.type, "applied", user_id=user_id, transaction="subscription_renewal")

    # --- invoice.payment_failed ---

    async def _handle_payment_failed(self, event: StripeEventEnvelope) -> ReconcileOutcome:
        invoice = event.data
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            self.logger.info("[STRIPE] failed invoice %s is not for a subscription", invoice.get("id"))
            return ReconcileOutcome(event.type, "skipped")

        user_id = await self._resolve_user_id(
            subscription_id,
            self._invoice_subscription_metadata(invoice),
            required=False,
        )
        if not user_id:
            subscription = await self._fetch_subscription(subscription_id, event)
            user_id = self.user_id_from_metadata(_get(subscription, "metadata"))
        if not user_id:
            raise UnresolvableUserException(f"no user for subscription {subscription_id}")

        correlation_id = self._correlation_id(event)
        record = await self.store.get_entitlement(user_id) or {}
        self._log_if_redelivered(record, correlation_id, user_id)

        if self._is_superseded(record, subscription_id):
            self.logger.info(
                "[ENTITLEMENT] payment failure for superseded subscription %s ignored for user_id=%s",
                subscription_id,
                user_id,
            )
            return ReconcileOutcome(event.type, "skipped", user_id=user_id)

        # 재시도 청구 실패는 최초 실패 시점의 유예 기간을 유지
        fields: Dict[str, Any] = {
            "subscription_status": SubscriptionStatus.PAST_DUE.value,
            "last_transaction": correlation_id,
        }
        first_failed_at = self.parse_timestamp(record.get("payment_failed_at"))
        grace_ends_at = self.parse_timestamp(record.get("grace_period_ends_at"))
        if first_failed_at is None or grace_ends_at is None:
            first_failed_at = first_failed_at or self.utcnow()
            grace_ends_at = grace_period_end(first_failed_at, self.grace_period_days)
            fields["payment_failed_at"] = first_failed_at.isoformat()
            fields["grace_period_ends_at"] = grace_ends_at.isoformat()
        await self.store.merge_entitlement(user_id, fields)
        await self.store.append_transaction(
            user_id,
            {
                "type": "payment_failed",
                "correlation_id": correlation_id,
                "details": {
                    "invoice_id": invoice.get("id"),
                    "subscription_id": subscription_id,
                    "attempt_count": invoice.get("attempt_count"),
                    "amount_due": invoice.get("amount_due"),
                    "grace_period_ends_at": grace_ends_at.isoformat(),
                },
            },
        )
        self.logger.warning(
            "[ENTITLEMENT] payment failed: user_id=%s subscription=%s grace_until=%s",
            user_id,
            subscription_id,
            grace_ends_at.isoformat(),
        )
        return ReconcileOutcome(event.type, "applied", user_id=user_id, transaction="payment_failed")

    # --- customer.subscription.deleted ---

    async def _handle_subscription_deleted(self, event: StripeEventEnvelope) -> ReconcileOutcome:
        subscription = event.data
        subscription_id = subscription.get("id")
        user_id = await self._resolve_user_id(subscription_id, subscription.get("metadata"))

        correlation_id = self._correlation_id(event)
        record = await self.store.get_entitlement(user_id) or {}
        self._log_if_redelivered(record, correlation_id, user_id)

        if self._is_superseded(record, subscription_id):
            self.logger.info(
                "[ENTITLEMENT] deletion of superseded subscription %s ignored for user_id=%s",
                subscription_id,
                user_id,
            )
            return ReconcileOutcome(event.type, "skipped", user_id=user_id)

        previous_tier = record.get("tier")
        previous_cycle = record.get("billing_cycle")
        customer_id = record.get("external_customer_id") or subscription.get("customer")

        fields: Dict[str, Any] = {
            "tier": Tier.FREE.value,
            "review_credits": 0,
            "review_credits_used": 0,
            "subscription_status": SubscriptionStatus.CANCELED.value,
            "cancel_at_period_end": False,
            "external_subscription_id": None,
            "subscription_ended_at": self.utcnow().isoformat(),
            "payment_failed_at": None,
            "grace_period_ends_at": None,
            "last_transaction": correlation_id,
        }
        if customer_id and not record.get("external_customer_id"):
            fields["external_customer_id"] = customer_id

        await self.store.merge_entitlement(user_id, fields)
        await self.store.append_transaction(
            user_id,
            {
                "type": "subscription_cancelled",
                "correlation_id": correlation_id,
                "details": {
                    "subscription_id": subscription_id,
                    "previous_tier": previous_tier,
                    "previous_billing_cycle": previous_cycle,
                },
            },
        )
        self.logger.info("[ENTITLEMENT] downgraded %s to free (subscription=%s)", user_id, subscription_id)

        await self._notify(
            "subscription_cancelled",
            user_id=user_id,
            tier=previous_tier,
            billing_cycle=previous_cycle,
            customer_id=customer_id,
        )
        return ReconcileOutcome(event.type, "applied", user_id=user_id, transaction="subscription_cancelled")

    # --- customer.subscription.updated ---

    async def _handle_subscription_updated(self, event: StripeEventEnvelope) -> ReconcileOutcome:
        subscription = event.data
        subscription_id = subscription.get("id")
        user_id = await self._resolve_user_id(subscription_id, subscription.get("metadata"))

        correlation_id = self._correlation_id(event)
        record = await self.store.get_entitlement(user_id) or {}
        self._log_if_redelivered(record, correlation_id, user_id)

        stored_status = record.get("subscription_status")
        if stored_status == SubscriptionStatus.CANCELED.value or self._is_superseded(record, subscription_id):
            self.logger.info(
                "[ENTITLEMENT] update for inactive subscription %s ignored for user_id=%s",
                subscription_id,
                user_id,
            )
            return ReconcileOutcome(event.type, "skipped", user_id=user_id)

        status = subscription.get("status")
        cancel_scheduled = bool(subscription.get("cancel_at_period_end")) or bool(subscription.get("cancel_at"))

        if status in DELINQUENT:
            return await self._apply_payment_issue(event, user_id, record, status, correlation_id)
        if cancel_scheduled:
            return await self._apply_cancellation_scheduled(event, user_id, record, subscription, correlation_id)
        active = status in ("active", "trialing")
        if active and (stored_status == SubscriptionStatus.CANCELING.value or record.get("cancel_at_period_end")):
            return await self._apply_cancellation_reverted(event, user_id, subscription, correlation_id)
        if active and stored_status == SubscriptionStatus.ACTIVE.value:
            return await self._apply_plan_change(event, user_id, record, subscription, correlation_id)

        return ReconcileOutcome(event.type, "unchanged", user_id=user_id)

    async def _apply_payment_issue(
        self,
        event: StripeEventEnvelope,
        user_id: str,
        record: Dict[str, Any],
        status: str,
        correlation_id: str,
    ) -> ReconcileOutcome:
        if record.get("subscription_status") == status:
            return ReconcileOutcome(event.type, "unchanged", user_id=user_id)

        fields: Dict[str, Any] = {"subscription_status": status, "last_transaction": correlation_id}
        if not record.get("payment_failed_at"):
            failed_at = self.utcnow()
            fields["payment_failed_at"] = failed_at.isoformat()
            fields["grace_period_ends_at"] = grace_period_end(failed_at, self.grace_period_days).isoformat()

        await self.store.merge_entitlement(user_id, fields)
        await self.store.append_transaction(
            user_id,
            {
                "type": "payment_issue",
                "correlation_id": correlation_id,
                "details": {"status": status, "previous_status": record.get("subscription_status")},
            },
        )
        self.logger.warning("[ENTITLEMENT] payment issue for %s, status: %s", user_id, status)
        return ReconcileOutcome(event.type, "applied", user_id=user_id, transaction="payment_issue")

    async def _apply_cancellation_scheduled(
        self,
        event: StripeEventEnvelope,
        user_id: str,
        record: Dict[str, Any],
        subscription: Dict[str, Any],
        correlation_id: str,
    ) -> ReconcileOutcome:
        if record.get("subscription_status") == SubscriptionStatus.CANCELING.value:
            return ReconcileOutcome(event.type, "unchanged", user_id=user_id)

        period_end = self._period_end(subscription)
        effective_at = self.parse_timestamp(subscription.get("cancel_at")) or period_end

        fields: Dict[str, Any] = {
            "subscription_status": SubscriptionStatus.CANCELING.value,
            "cancel_at_period_end": True,
            "cancellation_effective_at": self.isoformat(effective_at),
            "last_transaction": correlation_id,
        }
        if period_end:
            fields["subscription_period_end"] = period_end.isoformat()

        await self.store.merge_entitlement(user_id, fields)
        await self.store.append_transaction(
            user_id,
            {
                "type": "cancellation_scheduled",
                "correlation_id": correlation_id,
                "details": {
                    "subscription_id": subscription.get("id"),
                    "effective_at": self.isoformat(effective_at),
                },
            },
        )
        self.logger.info(
            "[ENTITLEMENT] cancellation scheduled: user_id=%s effective_at=%s",
            user_id,
            self.isoformat(effective_at),
        )

        await self._notify(
            "cancellation_scheduled",
            user_id=user_id,
            tier=record.get("tier"),
            billing_cycle=record.get("billing_cycle"),
            period_end=self.isoformat(effective_at),
        )
        return ReconcileOutcome(event.type, "applied", user_id=user_id, transaction="cancellation_scheduled")

    async def _apply_cancellation_reverted(
        self,
        event: StripeEventEnvelope,
        user_id: str,
        subscription: Dict[str, Any],
        correlation_id: str,
    ) -> ReconcileOutcome:
        await self.store.merge_entitlement(
            user_id,
            {
                "subscription_status": SubscriptionStatus.ACTIVE.value,
                "cancel_at_period_end": False,
                "cancellation_effective_at": None,
                "last_transaction": correlation_id,
            },
        )
        await self.store.append_transaction(
            user_id,
            {
                "type": "cancellation_reverted",
                "correlation_id": correlation_id,
                "details": {"subscription_id": subscription.get("id")},
            },
        )
        self.logger.info("[ENTITLEMENT] cancellation reverted: user_id=%s", user_id)
        return ReconcileOutcome(event.type, "applied", user_id=user_id, transaction="cancellation_reverted")

    async def _apply_plan_change(
        self,
        event: StripeEventEnvelope,
        user_id: str,
        record: Dict[str, Any],
        subscription: Dict[str, Any],
        correlation_id: str,
    ) -> ReconcileOutcome:
        plan = await self._resolve_subscription_plan(subscription, event)
        old_tier = Tier.parse(record.get("tier"))
        old_cycle = BillingCycle.parse(record.get("billing_cycle")) or BillingCycle.MONTHLY
        if plan is None or plan == (old_tier, old_cycle):
            return ReconcileOutcome(event.type, "unchanged", user_id=user_id)

        new_tier, new_cycle = plan
        if old_tier is not None:
            old_credits = self.catalog.grant_for(old_tier, old_cycle)
        else:
            old_credits = int(record.get("review_credits") or 0)
        new_credits = self.catalog.grant_for(new_tier, new_cycle)

        if new_credits != old_credits:
            upgrade = new_credits > old_credits
        else:
            upgrade = old_tier is None or new_tier.rank >= old_tier.rank
        transaction_type = "plan_upgrade" if upgrade else "plan_downgrade"

        fields: Dict[str, Any] = {
            "tier": new_tier.value,
            "billing_cycle": new_cycle.value,
            "review_credits": new_credits,
            "review_credits_used": 0,
            "last_credit_refresh": self.utcnow().isoformat(),
            "last_transaction": correlation_id,
        }
        period_end = self._period_end(subscription)
        if period_end:
            fields["subscription_period_end"] = period_end.isoformat()

        await self.store.merge_entitlement(user_id, fields)
        await self.store.append_transaction(
            user_id,
            {
                "type": transaction_type,
                "correlation_id": correlation_id,
                "details": {
                    "old_tier": old_tier.value if old_tier else None,
                    "old_billing_cycle": old_cycle.value,
                    "new_tier": new_tier.value,
                    "new_billing_cycle": new_cycle.value,
                    "old_credits": old_credits,
                    "new_credits": new_credits,
                },
            },
        )
        self.logger.info(
            "[ENTITLEMENT] %s: user_id=%s %s/%s -> %s/%s credits %s -> %s",
            transaction_type,
            user_id,
            old_tier.value if old_tier else None,
            old_cycle.value,
            new_tier.value,
            new_cycle.value,
            old_credits,
            new_credits,
        )

        await self._sync_subscription_metadata(subscription.get("id"), user_id, new_tier, new_cycle, event)
        return ReconcileOutcome(event.type, "applied", user_id=user_id, transaction=transaction_type)

    # --- 공통 헬퍼 ---

    def user_id_from_metadata(self, metadata: Any) -> Optional[str]:
        """메타데이터의 사용자 ID (비어 있거나 익명이면 None)"""
        if not isinstance(metadata, dict):
            return None
        for key in USER_ID_KEYS:
            value = metadata.get(key)
            if isinstance(value, str) and value.strip() and value.strip() != self.anonymous_user_id:
                return value.strip()
        return None

    async def _resolve_user_id(
        self,
        subscription_id: Optional[str],
        *metadata_sources: Any,
        required: bool = True,
    ) -> Optional[str]:
        """메타데이터 -> 저장소의 구독 ID 색인 순으로 사용자 조회"""
        for metadata in metadata_sources:
            user_id = self.user_id_from_metadata(metadata)
            if user_id:
                return user_id
        if subscription_id:
            user_id = await self.store.find_user_id_by_subscription(subscription_id)
            if user_id and user_id != self.anonymous_user_id:
                return user_id
        if required:
            raise UnresolvableUserException(f"no user for subscription {subscription_id}")
        return None

    async def _resolve_subscription_plan(
        self,
        subscription: Dict[str, Any],
        event: StripeEventEnvelope,
    ) -> Optional[Tuple[Tier, BillingCycle]]:
        """구독의 현재 가격으로 등급/결제주기 판별 (가격 재조회 실패 시 이벤트 내 가격 사용)"""
        items = _get(subscription, "items", "data", default=[])
        price = items[0].get("price") if items and isinstance(items[0], dict) else None
        if not isinstance(price, dict):
            return None

        if price.get("id"):
            try:
                price = await self.gateway.retrieve_price(price["id"], expand_product=True)
            except StripeGatewayError as exc:
                await self._report_upstream("price", exc, event)

        resolved = self.catalog.resolve_plan(price)
        if resolved is None:
            self.logger.warning("[STRIPE] could not resolve plan for price %s", price.get("id"))
            return None
        return resolved.tier, resolved.billing_cycle

    async def _fetch_subscription(self, subscription_id: str, event: StripeEventEnvelope) -> Optional[Dict[str, Any]]:
        try:
            return await self.gateway.retrieve_subscription(subscription_id)
        except StripeGatewayError as exc:
            await self._report_upstream("subscription", exc, event)
            return None

    async def _sync_subscription_metadata(
        self,
        subscription_id: str,
        user_id: str,
        tier: Tier,
        billing_cycle: BillingCycle,
        event: StripeEventEnvelope,
    ) -> None:
        """이후 이벤트에서 사용자를 찾을 수 있도록 구독 메타데이터에 기록"""
        try:
            await self.gateway.update_subscription_metadata(
                subscription_id,
                {"userId": user_id, "tier": tier.value, "billingCycle": billing_cycle.value},
            )
        except StripeGatewayError as exc:
            await self._report_upstream("subscription.metadata", exc, event, user_id=user_id)

    async def _report_upstream(
        self,
        resource: str,
        exc: StripeGatewayError,
        event: StripeEventEnvelope,
        user_id: Optional[str] = None,
    ) -> None:
        error = UpstreamLookupException(resource, str(exc))
        error.__cause__ = exc
        await self.error_reporter.report(
            "stripe_lookup",
            error,
            user_id=user_id,
            event_id=event.id,
            level=logging.WARNING,
            resource=resource,
            stripe_status=exc.status_code,
        )

    async def _notify(self, template: str, **context: Any) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send(template, **context)
        except Exception as exc:  # 알림 실패는 정산 결과에 영향 없음
            self.logger.warning("[NOTIFY] %s notification failed: %s", template, exc)

    def _log_if_redelivered(self, record: Dict[str, Any], correlation_id: str, user_id: str) -> None:
        if correlation_id and record.get("last_transaction") == correlation_id:
            self.logger.info("[ENTITLEMENT] duplicate delivery: user_id=%s correlation_id=%s", user_id, correlation_id)

    @staticmethod
    def _is_superseded(record: Dict[str, Any], subscription_id: Optional[str]) -> bool:
        current = record.get("external_subscription_id")
        return bool(current and subscription_id and current != subscription_id)

    @staticmethod
    def _correlation_id(event: StripeEventEnvelope) -> str:
        return event.id or event.data.get("id") or ""

    @staticmethod
    def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
        subscription = invoice.get("subscription") or _get(invoice, "parent", "subscription_details", "subscription")
        if isinstance(subscription, dict):
            return subscription.get("id")
        return subscription

    @staticmethod
    def _invoice_subscription_metadata(invoice: Dict[str, Any]) -> Dict[str, Any]:
        return (
            _get(invoice, "subscription_details", "metadata")
            or _get(invoice, "parent", "subscription_details", "metadata")
            or {}
        )

    def _period_end(self, subscription: Optional[Dict[str, Any]]):
        if not isinstance(subscription, dict):
            return None
        value = subscription.get("current_period_end")
        if value is None:
            items = _get(subscription, "items", "data", default=[])
            if items and isinstance(items[0], dict):
                value = items[0].get("current_period_end")
        return self.parse_timestamp(value)
