"""
테스트를 위한 Mock 서비스들
"""
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

from core.interfaces import IEntitlementStore, INotifier, IPaymentGateway
from core.responses import DatastoreWriteException
from services.stripe_gateway import StripeGatewayError


class InMemoryEntitlementStore(IEntitlementStore):
    """user_entitlements / entitlement_transactions / system_logs 를 메모리로 흉내"""

    def __init__(self, records: Optional[Dict[str, Dict[str, Any]]] = None):
        self.records: Dict[str, Dict[str, Any]] = {
            user_id: {"user_id": user_id, **record} for user_id, record in (records or {}).items()
        }
        self.transactions: List[Dict[str, Any]] = []
        self.system_logs: List[Dict[str, Any]] = []
        self.write_count = 0
        self.fail_writes = False

    def _before_write(self) -> None:
        if self.fail_writes:
            raise DatastoreWriteException("simulated outage", table="user_entitlements")
        self.write_count += 1

    async def get_entitlement(self, user_id: str) -> Optional[Dict[str, Any]]:
        record = self.records.get(user_id)
        return dict(record) if record else None

    async def merge_entitlement(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        self._before_write()
        record = self.records.setdefault(user_id, {"user_id": user_id})
        record.update(fields)
        return dict(record)

    async def append_transaction(self, user_id: str, transaction: Dict[str, Any]) -> Dict[str, Any]:
        self._before_write()
        entry = {
            "user_id": user_id,
            "type": transaction["type"],
            "correlation_id": transaction.get("correlation_id"),
            "details": dict(transaction.get("details") or {}),
        }
        self.transactions.append(entry)
        return entry

    async def increment_counter(
        self,
        user_id: str,
        field: str,
        amount: int,
        transaction: Dict[str, Any],
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        correlation_id = transaction.get("correlation_id")
        for existing in self.transactions:
            if (
                existing["user_id"] == user_id
                and existing["type"] == transaction["type"]
                and correlation_id
                and existing["correlation_id"] == correlation_id
            ):
                return None

        self._before_write()
        record = self.records.setdefault(user_id, {"user_id": user_id})
        record[field] = int(record.get(field) or 0) + amount
        record.update(extra_fields or {})
        details = dict(transaction.get("details") or {})
        details["balance_after"] = record[field]
        await self.append_transaction(user_id, {**transaction, "details": details})
        return record[field]

    async def find_user_id_by_subscription(self, subscription_id: str) -> Optional[str]:
        for user_id, record in self.records.items():
            if subscription_id and record.get("external_subscription_id") == subscription_id:
                return user_id
        return None

    async def list_transactions(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        return [tx for tx in reversed(self.transactions) if tx["user_id"] == user_id][:limit]

    async def log_system_event(self, user_id: str = None, event_type: str = "info", event_data: Dict[str, Any] = None) -> bool:
        self.system_logs.append({"user_id": user_id, "event_type": event_type, "event_data": event_data or {}})
        return True

    def transaction_types(self, user_id: str) -> List[str]:
        return [tx["type"] for tx in self.transactions if tx["user_id"] == user_id]


class FakeGateway(IPaymentGateway):
    """Stripe 게이트웨이 더블 - 호출을 기록하고 지정된 작업은 실패시킴"""

    def __init__(
        self,
        subscriptions: Optional[Dict[str, Dict[str, Any]]] = None,
        prices: Optional[Dict[str, Dict[str, Any]]] = None,
        line_items: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        fail: tuple = (),
    ):
        self.subscriptions = subscriptions or {}
        self.prices = prices or {}
        self.line_items = line_items or {}
        self.fail = set(fail)
        self.calls: List[str] = []
        self.metadata_updates: List[tuple] = []
        self.checkout_params: List[Dict[str, Any]] = []
        self.portal_calls: List[tuple] = []

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail:
            raise StripeGatewayError("Stripe API 서버 오류", 503, code="api_error", operation=operation)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._record("subscription.retrieve")
        if subscription_id not in self.subscriptions:
            raise StripeGatewayError("요청한 Stripe 리소스를 찾지 못했습니다.", 404, operation="subscription.retrieve")
        return dict(self.subscriptions[subscription_id])

    async def retrieve_price(self, price_id: str, expand_product: bool = True) -> Dict[str, Any]:
        self._record("price.retrieve")
        return dict(self.prices.get(price_id, {"id": price_id}))

    async def list_line_items(self, session_id: str) -> List[Dict[str, Any]]:
        self._record("checkout.session.list_line_items")
        return list(self.line_items.get(session_id, []))

    async def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        self._record("subscription.modify")
        self.metadata_updates.append((subscription_id, dict(metadata)))
        return {"id": subscription_id, "metadata": metadata}

    async def create_checkout_session(self, **params: Any) -> Dict[str, Any]:
        self._record("checkout.session.create")
        self.checkout_params.append(params)
        return {"id": "cs_test_123", "url": "https://checkout.stripe.com/c/pay/cs_test_123"}

    async def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        self._record("billing_portal.session.create")
        self.portal_calls.append((customer_id, return_url))
        return {"id": "bps_123", "url": f"https://billing.stripe.com/p/session/{customer_id}"}


class RecordingNotifier(INotifier):
    """전송된 알림을 기록"""

    def __init__(self):
        self.sent: List[tuple] = []

    async def send(self, template: str, **context: Any) -> bool:
        self.sent.append((template, context))
        return True


class FakeQuery:
    """supabase 쿼리 빌더 체인 흉내 (select/insert/update/upsert + eq/is_/order/limit)"""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Optional[Dict[str, Any]] = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.on_conflict: Optional[str] = None
        self.ignore_duplicates = False
        self._limit: Optional[int] = None
        self._order: Optional[tuple] = None

    def select(self, columns: str = "*"):
        self.op = "select"
        return self

    def insert(self, payload: Dict[str, Any]):
        self.op, self.payload = "insert", dict(payload)
        return self

    def update(self, payload: Dict[str, Any]):
        self.op, self.payload = "update", dict(payload)
        return self

    def upsert(self, payload: Dict[str, Any], on_conflict: str = "", ignore_duplicates: bool = False):
        self.op, self.payload = "upsert", dict(payload)
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        return self

    def eq(self, column: str, value: Any):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def is_(self, column: str, value: str):
        self.filters.append(lambda row: row.get(column) is None)
        return self

    def order(self, column: str, desc: bool = False):
        self._order = (column, desc)
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def execute(self):
        self.db.executed.append((self.table, self.op))
        if self.table in self.db.failing_tables and self.op != "select":
            raise RuntimeError(f"{self.table} unavailable")

        rows = self.db.tables.setdefault(self.table, [])

        if self.op == "select":
            matched = [dict(row) for row in rows if all(f(row) for f in self.filters)]
            if self._order:
                column, desc = self._order
                matched.sort(key=lambda row: row.get(column) or "", reverse=desc)
            if self._limit is not None:
                matched = matched[: self._limit]
            return SimpleNamespace(data=matched)

        if self.op == "insert":
            rows.append(dict(self.payload))
            return SimpleNamespace(data=[dict(self.payload)])

        if self.op == "update":
            if self.db.before_update:
                self.db.before_update.pop(0)(self.db)
            matched = [row for row in rows if all(f(row) for f in self.filters)]
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=[dict(row) for row in matched])

        key = self.on_conflict
        existing = next((row for row in rows if row.get(key) == self.payload.get(key)), None)
        if existing is None:
            rows.append(dict(self.payload))
            return SimpleNamespace(data=[dict(self.payload)])
        if self.ignore_duplicates:
            return SimpleNamespace(data=[])
        existing.update(self.payload)
        return SimpleNamespace(data=[dict(existing)])


class FakeSupabase:
    """supabase.Client 대체 - 테이블별 행 목록을 메모리에 보관"""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: [dict(r) for r in rows] for name, rows in (tables or {}).items()}
        self.executed: List[tuple] = []
        self.failing_tables: set = set()
        # update 실행 직전에 호출되는 훅 (동시 쓰기 흉내)
        self.before_update: List[Callable[["FakeSupabase"], None]] = []
        self.auth = SimpleNamespace(get_user=self._get_user)
        self.users: Dict[str, Any] = {}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def _get_user(self, token: str):
        user = self.users.get(token)
        if user is None:
            raise RuntimeError("invalid JWT")
        return SimpleNamespace(user=user)
