"""
서비스 기본 클래스
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from core.interfaces import IEntitlementStore

logger = logging.getLogger(__name__)


class BaseService:
    """모든 서비스의 기본 클래스"""

    def __init__(self, store: IEntitlementStore):
        self.store = store
        self.logger = logging.getLogger(self.__class__.__name__)

    @staticmethod
    def utcnow() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def parse_timestamp(value: Any) -> Optional[datetime]:
        """유닉스 초 / ISO 문자열 / datetime을 UTC datetime으로 변환"""
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            try:
                return datetime.fromtimestamp(float(value), tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None
        if isinstance(value, str):
            raw = value.strip()
            if raw.endswith('Z'):
                raw = raw[:-1] + '+00:00'
            try:
                dt = datetime.fromisoformat(raw)
            except ValueError:
                return None
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        return None

    @staticmethod
    def isoformat(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None
