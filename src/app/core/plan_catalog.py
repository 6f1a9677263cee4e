"""
요금제별 크레딧 설정 및 가격 매핑 관리

가격 ID -> 상품/등급/결제주기/크레딧 매핑을 하나의 버전 관리 테이블로 유지합니다.
팩토리에서 한 번 로드해 정산기(reconciler)와 결제 라우터에 주입합니다.
"""
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional


class Tier(str, Enum):
    """구독 등급"""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"

    @classmethod
    def parse(cls, value: Any) -> Optional["Tier"]:
        if value is None:
            return None
        if isinstance(value, Tier):
            return value
        normalized = str(value).strip().lower()
        normalized = TIER_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return None

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)


class BillingCycle(str, Enum):
    """결제 주기"""
    MONTHLY = "monthly"
    ANNUAL = "annual"

    @classmethod
    def parse(cls, value: Any) -> Optional["BillingCycle"]:
        if value is None:
            return None
        if isinstance(value, BillingCycle):
            return value
        return CYCLE_ALIASES.get(str(value).strip().lower())


class SubscriptionStatus(str, Enum):
    """구독 상태"""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELING = "canceling"
    CANCELED = "canceled"
    UNPAID = "unpaid"


class ProductKind(str, Enum):
    """상품 종류"""
    SUBSCRIPTION = "subscription"
    CREDIT_PACK = "credit_pack"
    CHAT_TOPUP = "chat_topup"
    CONSULTATION = "consultation"


TIER_ORDER = [Tier.FREE, Tier.STARTER, Tier.PRO, Tier.BUSINESS]

# 이전 초안의 등급 이름
TIER_ALIASES = {
    "professional": "pro",
    "enterprise": "business",
}

CYCLE_ALIASES = {
    "monthly": BillingCycle.MONTHLY,
    "month": BillingCycle.MONTHLY,
    "annual": BillingCycle.ANNUAL,
    "annually": BillingCycle.ANNUAL,
    "yearly": BillingCycle.ANNUAL,
    "year": BillingCycle.ANNUAL,
}


@dataclass(frozen=True)
class PriceEntry:
    """가격 ID 하나에 대응하는 상품 설정"""
    product_key: str
    kind: ProductKind
    name: str
    price_id: Optional[str] = None
    tier: Optional[Tier] = None
    billing_cycle: Optional[BillingCycle] = None
    credits: int = 0  # 일회성 크레딧 팩 수량
    prompts: int = 0  # 채팅 충전 프롬프트 수
    unit_amount: Optional[int] = None  # 센트 단위 가격 (금액 기반 판별용)

    @property
    def is_subscription(self) -> bool:
        return self.kind is ProductKind.SUBSCRIPTION


class ResolvedPlan(NamedTuple):
    tier: Tier
    billing_cycle: BillingCycle
    source: str


DEFAULT_CATALOG: Dict[str, Any] = {
    "version": "2025-02",
    "annual_multiplier": 12,
    "monthly_grants": {
        "starter": 5,
        "pro": 20,
        "business": 50,
    },
    "products": [
        {"product_key": "starter_monthly", "kind": "subscription", "name": "Starter Monthly",
         "price_id": "price_1Sxbs12Ig0gUvbfw60DcAdsb", "tier": "starter", "billing_cycle": "monthly", "unit_amount": 1900},
        {"product_key": "starter_annual", "kind": "subscription", "name": "Starter Annual",
         "price_id": "price_1Sxc6M2Ig0gUvbfwKGnLYPsD", "tier": "starter", "billing_cycle": "annual", "unit_amount": 19000},
        {"product_key": "pro_monthly", "kind": "subscription", "name": "Pro Monthly",
         "price_id": "price_1Sxc8H2Ig0gUvbfwZpnVjgV1", "tier": "pro", "billing_cycle": "monthly", "unit_amount": 4900},
        {"product_key": "pro_annual", "kind": "subscription", "name": "Pro Annual",
         "price_id": "price_1SxcAu2Ig0gUvbfwCgAD1pcK", "tier": "pro", "billing_cycle": "annual", "unit_amount": 49000},
        {"product_key": "business_monthly", "kind": "subscription", "name": "Business Monthly",
         "price_id": "price_1SxcCt2Ig0gUvbfwA7KAzrM7", "tier": "business", "billing_cycle": "monthly", "unit_amount": 9900},
        {"product_key": "business_annual", "kind": "subscription", "name": "Business Annual",
         "price_id": "price_1SxcF92Ig0gUvbfwoplfYN9m", "tier": "business", "billing_cycle": "annual", "unit_amount": 99000},
        {"product_key": "credits_5", "kind": "credit_pack", "name": "5 Credit Pack",
         "price_id": "price_1SxcGL2Ig0gUvbfw0OEB9gPK", "credits": 5},
        {"product_key": "credits_10", "kind": "credit_pack", "name": "10 Credit Pack",
         "price_id": "price_1SxcHP2Ig0gUvbfwrQjmaEFm", "credits": 10},
        {"product_key": "credits_20", "kind": "credit_pack", "name": "20 Credit Pack",
         "price_id": "price_1SxcJ32Ig0gUvbfwJeetPLHa", "credits": 20},
        {"product_key": "chat_topup", "kind": "chat_topup", "name": "Chat Top-Up",
         "price_id": "price_1SxcKS2Ig0gUvbfwQBqvE9k4", "prompts": 30},
        # 상담 가격 ID는 배포 환경의 카탈로그 파일에서 지정
        {"product_key": "consultation", "kind": "consultation", "name": "HR Consultation"},
    ],
}


class PlanCatalog:
    """버전이 지정된 요금제/가격 테이블"""

    def __init__(
        self,
        version: str,
        monthly_grants: Dict[Tier, int],
        entries: Iterable[PriceEntry],
        annual_multiplier: int = 12,
    ):
        self.version = version
        self.annual_multiplier = annual_multiplier
        self.monthly_grants: Dict[Tier, int] = {tier: int(amount) for tier, amount in monthly_grants.items()}
        self._by_key: Dict[str, PriceEntry] = {}
        self._by_price: Dict[str, PriceEntry] = {}
        self._by_amount: Dict[int, PriceEntry] = {}

        for entry in entries:
            if entry.product_key in self._by_key:
                raise ValueError(f"duplicate product key in plan catalog: {entry.product_key}")
            if entry.is_subscription and (entry.tier is None or entry.billing_cycle is None):
                raise ValueError(f"subscription product {entry.product_key} needs tier and billing_cycle")
            self._by_key[entry.product_key] = entry
            if entry.price_id:
                if entry.price_id in self._by_price:
                    raise ValueError(f"duplicate price id in plan catalog: {entry.price_id}")
                self._by_price[entry.price_id] = entry
            if entry.is_subscription and entry.unit_amount is not None:
                self._by_amount[int(entry.unit_amount)] = entry

    # --- 크레딧 계산 ---

    def monthly_grant(self, tier: Tier) -> int:
        """등급별 월간 리뷰 크레딧 (free는 0)"""
        return self.monthly_grants.get(tier, 0)

    def grant_for(self, tier: Tier, billing_cycle: BillingCycle) -> int:
        """결제 주기를 반영한 지급 크레딧 - 연간은 월간의 12배를 선지급"""
        monthly = self.monthly_grant(tier)
        if billing_cycle is BillingCycle.ANNUAL:
            return monthly * self.annual_multiplier
        return monthly

    # --- 조회 ---

    def entry_for_price(self, price_id: Optional[str]) -> Optional[PriceEntry]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def entry_for_product(self, product_key: Optional[str]) -> Optional[PriceEntry]:
        if not product_key:
            return None
        return self._by_key.get(product_key)

    def entry_for_amount(self, unit_amount: Any) -> Optional[PriceEntry]:
        if isinstance(unit_amount, bool) or not isinstance(unit_amount, int):
            return None
        return self._by_amount.get(unit_amount)

    def subscription_entry(self, tier: Tier, billing_cycle: BillingCycle) -> Optional[PriceEntry]:
        for entry in self._by_key.values():
            if entry.is_subscription and entry.tier is tier and entry.billing_cycle is billing_cycle:
                return entry
        return None

    @property
    def entries(self) -> List[PriceEntry]:
        return list(self._by_key.values())

    def resolve_plan(self, price: Optional[Dict[str, Any]]) -> Optional[ResolvedPlan]:
        """현재 가격 객체에서 등급/결제주기 판별

        판별 순서: 가격 메타데이터 -> 상품 메타데이터 -> 가격 ID 테이블 -> 금액 테이블.
        하나도 맞지 않으면 None (호출자는 저장된 등급 유지).
        """
        if not isinstance(price, dict):
            return None

        entry = self.entry_for_price(price.get("id"))
        table_cycle = entry.billing_cycle if entry and entry.is_subscription else None
        recurring = price.get("recurring") if isinstance(price.get("recurring"), dict) else {}
        interval_cycle = BillingCycle.parse(recurring.get("interval"))

        price_meta = price.get("metadata") if isinstance(price.get("metadata"), dict) else {}
        tier = _paid_tier(price_meta.get("tier"))
        if tier:
            cycle = _cycle_from_metadata(price_meta) or interval_cycle or table_cycle or BillingCycle.MONTHLY
            return ResolvedPlan(tier, cycle, "price_metadata")

        product = price.get("product")
        if isinstance(product, dict):
            product_meta = product.get("metadata") if isinstance(product.get("metadata"), dict) else {}
            tier = _paid_tier(product_meta.get("tier"))
            if tier:
                cycle = (
                    _cycle_from_metadata(price_meta)
                    or _cycle_from_metadata(product_meta)
                    or interval_cycle
                    or table_cycle
                    or BillingCycle.MONTHLY
                )
                return ResolvedPlan(tier, cycle, "product_metadata")

        if entry and entry.is_subscription:
            return ResolvedPlan(entry.tier, entry.billing_cycle, "price_id")

        amount_entry = self.entry_for_amount(price.get("unit_amount"))
        if amount_entry:
            return ResolvedPlan(amount_entry.tier, amount_entry.billing_cycle, "amount")

        return None

    # --- 로드 ---

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanCatalog":
        grants: Dict[Tier, int] = {}
        for raw_tier, amount in (data.get("monthly_grants") or {}).items():
            tier = Tier.parse(raw_tier)
            if tier is None:
                raise ValueError(f"unknown tier in plan catalog: {raw_tier}")
            grants[tier] = int(amount)

        entries = []
        for raw in data.get("products") or []:
            entries.append(
                PriceEntry(
                    product_key=raw["product_key"],
                    kind=ProductKind(raw["kind"]),
                    name=raw.get("name") or raw["product_key"],
                    price_id=raw.get("price_id"),
                    tier=Tier.parse(raw.get("tier")),
                    billing_cycle=BillingCycle.parse(raw.get("billing_cycle")),
                    credits=int(raw.get("credits") or 0),
                    prompts=int(raw.get("prompts") or 0),
                    unit_amount=raw.get("unit_amount"),
                )
            )

        return cls(
            version=str(data.get("version") or "unversioned"),
            monthly_grants=grants,
            entries=entries,
            annual_multiplier=int(data.get("annual_multiplier") or 12),
        )

    @classmethod
    def default(cls) -> "PlanCatalog":
        return cls.from_dict(DEFAULT_CATALOG)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "PlanCatalog":
        """JSON 파일이 지정되면 해당 테이블을, 아니면 기본 테이블을 사용"""
        if not path:
            return cls.default()
        with Path(path).open("r", encoding="utf-8") as fp:
            return cls.from_dict(json.load(fp))


def _paid_tier(value: Any) -> Optional[Tier]:
    tier = Tier.parse(value)
    if tier is None or tier is Tier.FREE:
        return None
    return tier


def _cycle_from_metadata(metadata: Dict[str, Any]) -> Optional[BillingCycle]:
    return BillingCycle.parse(metadata.get("billingCycle") or metadata.get("billing_cycle"))
