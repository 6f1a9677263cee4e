"""PlanCatalog 단위 테스트"""
import json

import pytest

from core.plan_catalog import BillingCycle, PlanCatalog, ProductKind, Tier


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog.default()


@pytest.mark.parametrize(
    "tier, monthly",
    [(Tier.STARTER, 5), (Tier.PRO, 20), (Tier.BUSINESS, 50)],
)
def test_annual_grant_is_twelve_times_monthly(catalog, tier, monthly):
    assert catalog.grant_for(tier, BillingCycle.MONTHLY) == monthly
    assert catalog.grant_for(tier, BillingCycle.ANNUAL) == monthly * 12


def test_free_tier_has_no_grant(catalog):
    assert catalog.grant_for(Tier.FREE, BillingCycle.ANNUAL) == 0


def test_legacy_tier_names_are_aliased():
    assert Tier.parse("professional") is Tier.PRO
    assert Tier.parse("Enterprise") is Tier.BUSINESS
    assert Tier.parse("platinum") is None
    assert BillingCycle.parse("year") is BillingCycle.ANNUAL


def test_resolve_plan_prefers_price_metadata(catalog):
    pro_monthly = catalog.entry_for_product("pro_monthly")
    price = {
        "id": pro_monthly.price_id,
        "metadata": {"tier": "business", "billingCycle": "annual"},
        "product": {"metadata": {"tier": "starter"}},
    }

    resolved = catalog.resolve_plan(price)

    assert (resolved.tier, resolved.billing_cycle, resolved.source) == (Tier.BUSINESS, BillingCycle.ANNUAL, "price_metadata")


def test_resolve_plan_uses_product_metadata_with_recurring_interval(catalog):
    price = {
        "id": "price_unknown",
        "metadata": {},
        "recurring": {"interval": "year"},
        "product": {"id": "prod_1", "metadata": {"tier": "professional"}},
    }

    resolved = catalog.resolve_plan(price)

    assert (resolved.tier, resolved.billing_cycle, resolved.source) == (Tier.PRO, BillingCycle.ANNUAL, "product_metadata")


def test_resolve_plan_falls_back_to_price_table_then_amount(catalog):
    business_annual = catalog.entry_for_product("business_annual")

    by_id = catalog.resolve_plan({"id": business_annual.price_id, "product": "prod_x"})
    by_amount = catalog.resolve_plan({"id": "price_legacy", "unit_amount": 4900})

    assert (by_id.tier, by_id.billing_cycle, by_id.source) == (Tier.BUSINESS, BillingCycle.ANNUAL, "price_id")
    assert (by_amount.tier, by_amount.billing_cycle, by_amount.source) == (Tier.PRO, BillingCycle.MONTHLY, "amount")


def test_resolve_plan_returns_none_when_nothing_matches(catalog):
    assert catalog.resolve_plan({"id": "price_legacy", "unit_amount": 1234}) is None
    assert catalog.resolve_plan(None) is None


def test_one_time_products_are_indexed_by_price(catalog):
    pack = catalog.entry_for_product("credits_10")
    topup = catalog.entry_for_product("chat_topup")

    assert catalog.entry_for_price(pack.price_id).credits == 10
    assert topup.kind is ProductKind.CHAT_TOPUP and topup.prompts == 30
    assert catalog.entry_for_product("consultation").price_id is None


def test_load_reads_json_override(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(
        json.dumps(
            {
                "version": "test-1",
                "monthly_grants": {"starter": 3, "pro": 9},
                "products": [
                    {"product_key": "pro_monthly", "kind": "subscription", "price_id": "price_a",
                     "tier": "pro", "billing_cycle": "monthly", "unit_amount": 100},
                ],
            }
        ),
        encoding="utf-8",
    )

    catalog = PlanCatalog.load(str(path))

    assert catalog.version == "test-1"
    assert catalog.grant_for(Tier.PRO, BillingCycle.ANNUAL) == 108
    assert catalog.resolve_plan({"id": "price_a"}).tier is Tier.PRO


def test_duplicate_price_ids_are_rejected():
    data = {
        "monthly_grants": {"pro": 20},
        "products": [
            {"product_key": "a", "kind": "credit_pack", "price_id": "price_dup", "credits": 1},
            {"product_key": "b", "kind": "credit_pack", "price_id": "price_dup", "credits": 2},
        ],
    }
    with pytest.raises(ValueError):
        PlanCatalog.from_dict(data)
