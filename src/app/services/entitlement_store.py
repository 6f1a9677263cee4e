"""
Supabase 기반 사용자 권한 저장소

테이블
- user_entitlements: 사용자당 1행 (user_id 기본키), 부분 병합(upsert)으로만 갱신
- entitlement_transactions: 추가 전용 거래 로그
- system_logs: 운영 이벤트 로그
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from core.interfaces import IEntitlementStore
from core.responses import DatastoreWriteException

logger = logging.getLogger(__name__)

ENTITLEMENTS_TABLE = 'user_entitlements'
TRANSACTIONS_TABLE = 'entitlement_transactions'
SYSTEM_LOGS_TABLE = 'system_logs'

COUNTER_FIELDS = ('purchased_credits', 'bonus_prompts', 'review_credits', 'review_credits_used')
MAX_COUNTER_RETRIES = 5

ENTITLEMENT_DEFAULTS: Dict[str, Any] = {
    'tier': 'free',
    'billing_cycle': 'monthly',
    'review_credits': 0,
    'review_credits_used': 0,
    'purchased_credits': 0,
    'bonus_prompts': 0,
    'subscription_status': None,
    'cancel_at_period_end': False,
    'subscription_period_end': None,
    'external_customer_id': None,
    'external_subscription_id': None,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseEntitlementStore(IEntitlementStore):
    """user_entitlements 테이블 접근 (서비스 롤 클라이언트 사용)"""

    def __init__(self, client: Client):
        self.client = client

    async def get_entitlement(self, user_id: str) -> Optional[Dict[str, Any]]:
        result = (
            self.client.table(ENTITLEMENTS_TABLE)
            .select('*')
            .eq('user_id', user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def merge_entitlement(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """지정한 컬럼만 upsert - 나머지 컬럼은 그대로 유지"""
        payload = dict(fields)
        payload['user_id'] = user_id
        payload['updated_at'] = _now_iso()
        try:
            result = (
                self.client.table(ENTITLEMENTS_TABLE)
                .upsert(payload, on_conflict='user_id')
                .execute()
            )
        except Exception as e:
            logger.error(f"[ENTITLEMENT] 권한 병합 실패: user_id={user_id} error={e}")
            raise DatastoreWriteException(f"권한 레코드 저장 실패: {e}", table=ENTITLEMENTS_TABLE) from e
        return result.data[0] if result.data else payload

    async def append_transaction(self, user_id: str, transaction: Dict[str, Any]) -> Dict[str, Any]:
        record = {
            'user_id': user_id,
            'type': transaction['type'],
            'correlation_id': transaction.get('correlation_id'),
            'details': transaction.get('details') or {},
            'created_at': transaction.get('created_at') or _now_iso(),
        }
        try:
            result = self.client.table(TRANSACTIONS_TABLE).insert(record).execute()
        except Exception as e:
            logger.error(f"[ENTITLEMENT] 거래 로그 기록 실패: user_id={user_id} type={record['type']} error={e}")
            raise DatastoreWriteException(f"거래 로그 기록 실패: {e}", table=TRANSACTIONS_TABLE) from e
        return result.data[0] if result.data else record

    async def has_transaction(self, user_id: str, transaction_type: str, correlation_id: str) -> bool:
        result = (
            self.client.table(TRANSACTIONS_TABLE)
            .select('id')
            .eq('user_id', user_id)
            .eq('type', transaction_type)
            .eq('correlation_id', correlation_id)
            .limit(1)
            .execute()
        )
        return bool(result.data)

    async def increment_counter(
        self,
        user_id: str,
        field: str,
        amount: int,
        transaction: Dict[str, Any],
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """누적 카운터 증가

        읽은 값과 같을 때만 갱신하는 조건부 update를 충돌 시 재시도합니다.
        같은 거래 타입으로 이미 기록된 correlation_id면 건너뛰고 None을 반환합니다.
        """
        if field not in COUNTER_FIELDS:
            raise ValueError(f"증가할 수 없는 필드입니다: {field}")

        correlation_id = transaction.get('correlation_id')
        if correlation_id and await self.has_transaction(user_id, transaction['type'], correlation_id):
            logger.info(
                "[ENTITLEMENT] duplicate %s skipped: user_id=%s correlation_id=%s",
                transaction['type'],
                user_id,
                correlation_id,
            )
            return None

        table = self.client.table
        new_value: Optional[int] = None
        try:
            for attempt in range(1, MAX_COUNTER_RETRIES + 1):
                current_row = await self.get_entitlement(user_id)
                changes = dict(extra_fields or {})
                changes['updated_at'] = _now_iso()

                if current_row is None:
                    # 첫 기록: 동시에 다른 요청이 행을 만들었으면 무시되고 재시도
                    changes.update({'user_id': user_id, field: amount})
                    result = (
                        table(ENTITLEMENTS_TABLE)
                        .upsert(changes, on_conflict='user_id', ignore_duplicates=True)
                        .execute()
                    )
                    if result.data:
                        new_value = amount
                        break
                else:
                    current = current_row.get(field)
                    base = int(current or 0)
                    changes[field] = base + amount
                    query = table(ENTITLEMENTS_TABLE).update(changes).eq('user_id', user_id)
                    query = query.is_(field, 'null') if current is None else query.eq(field, current)
                    result = query.execute()
                    if result.data:
                        new_value = base + amount
                        break

                logger.info(
                    "[ENTITLEMENT] %s update conflict, retrying: user_id=%s attempt=%s",
                    field,
                    user_id,
                    attempt,
                )
        except Exception as e:
            logger.error(f"[ENTITLEMENT] 카운터 증가 실패: user_id={user_id} field={field} error={e}")
            raise DatastoreWriteException(f"{field} 증가 실패: {e}", table=ENTITLEMENTS_TABLE) from e

        if new_value is None:
            raise DatastoreWriteException(
                f"{field} 증가 충돌이 {MAX_COUNTER_RETRIES}회 반복되었습니다",
                table=ENTITLEMENTS_TABLE,
            )

        details = dict(transaction.get('details') or {})
        details['balance_after'] = new_value
        await self.append_transaction(user_id, {**transaction, 'details': details})
        return new_value

    async def find_user_id_by_subscription(self, subscription_id: str) -> Optional[str]:
        if not subscription_id:
            return None
        result = (
            self.client.table(ENTITLEMENTS_TABLE)
            .select('user_id')
            .eq('external_subscription_id', subscription_id)
            .limit(1)
            .execute()
        )
        return result.data[0]['user_id'] if result.data else None

    async def list_transactions(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        try:
            result = (
                self.client.table(TRANSACTIONS_TABLE)
                .select('*')
                .eq('user_id', user_id)
                .order('created_at', desc=True)
                .limit(limit)
                .execute()
            )
            return result.data or []
        except Exception as e:
            logger.error(f"거래 로그 조회 실패: {e}")
            return []

    async def log_system_event(self, user_id: str = None, event_type: str = 'info',
                               event_data: Dict[str, Any] = None) -> bool:
        """시스템 이벤트 로그 기록"""
        try:
            log_data = {
                'user_id': user_id,
                'event_type': event_type,
                'event_data': event_data or {},
            }
            result = self.client.table(SYSTEM_LOGS_TABLE).insert(log_data).execute()
            return len(result.data) > 0
        except Exception as e:
            logger.error(f"시스템 로그 기록 실패: {e}")
            return False
