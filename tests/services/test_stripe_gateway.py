"""StripeGateway 단위 테스트 (SDK 호출은 monkeypatch)"""
import asyncio
import threading

import pytest
import stripe

from services.stripe_gateway import StripeGateway, StripeGatewayError


def test_requires_secret_key():
    with pytest.raises(ValueError):
        StripeGateway("  ")


def test_retrieve_subscription_passes_api_key(monkeypatch):
    calls = []

    def _retrieve(subscription_id, **kwargs):
        calls.append((subscription_id, kwargs))
        return {"id": subscription_id, "metadata": {"userId": "user-1"}}

    monkeypatch.setattr(stripe.Subscription, "retrieve", _retrieve)
    gateway = StripeGateway("sk_test_123")

    result = asyncio.run(gateway.retrieve_subscription("sub_1"))

    assert result["metadata"]["userId"] == "user-1"
    assert calls == [("sub_1", {"api_key": "sk_test_123"})]


def test_retrieve_price_expands_product(monkeypatch):
    calls = []

    def _retrieve(price_id, **kwargs):
        calls.append(kwargs)
        return {"id": price_id, "product": {"id": "prod_1", "metadata": {"tier": "pro"}}}

    monkeypatch.setattr(stripe.Price, "retrieve", _retrieve)
    gateway = StripeGateway("sk_test_123")

    result = asyncio.run(gateway.retrieve_price("price_1"))

    assert result["product"]["metadata"]["tier"] == "pro"
    assert calls[0]["expand"] == ["product"]


def test_list_line_items_returns_plain_items(monkeypatch):
    def _list(session_id, **kwargs):
        assert kwargs["limit"] == 100
        return {"object": "list", "data": [{"price": {"id": "price_1"}, "quantity": 2}]}

    monkeypatch.setattr(stripe.checkout.Session, "list_line_items", _list)
    gateway = StripeGateway("sk_test_123")

    items = asyncio.run(gateway.list_line_items("cs_1"))

    assert items == [{"price": {"id": "price_1"}, "quantity": 2}]


def test_stripe_error_is_wrapped_with_status(monkeypatch):
    def _retrieve(subscription_id, **kwargs):
        raise stripe.InvalidRequestError("No such subscription: 'sub_x'", "id", http_status=404)

    monkeypatch.setattr(stripe.Subscription, "retrieve", _retrieve)
    gateway = StripeGateway("sk_test_123")

    with pytest.raises(StripeGatewayError) as exc_info:
        asyncio.run(gateway.retrieve_subscription("sub_x"))

    assert exc_info.value.status_code == 404
    assert exc_info.value.operation == "subscription.retrieve"
    assert isinstance(exc_info.value.__cause__, stripe.StripeError)


def test_rate_limit_uses_friendly_message(monkeypatch):
    def _modify(subscription_id, **kwargs):
        raise stripe.RateLimitError("Too many requests", http_status=429)

    monkeypatch.setattr(stripe.Subscription, "modify", _modify)
    gateway = StripeGateway("sk_test_123")

    with pytest.raises(StripeGatewayError) as exc_info:
        asyncio.run(gateway.update_subscription_metadata("sub_1", {"userId": "user-1"}))

    assert exc_info.value.status_code == 429
    assert "제한" in str(exc_info.value)


def test_sdk_call_runs_off_the_event_loop_thread(monkeypatch):
    threads = []

    def _retrieve(subscription_id, **kwargs):
        threads.append(threading.get_ident())
        return {"id": subscription_id}

    monkeypatch.setattr(stripe.Subscription, "retrieve", _retrieve)
    gateway = StripeGateway("sk_test_123")

    async def _run():
        await gateway.retrieve_subscription("sub_1")
        return threading.get_ident()

    loop_thread = asyncio.run(_run())

    assert threads and threads[0] != loop_thread
