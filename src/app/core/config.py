"""
애플리케이션 설정 관리
"""
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import validator
from pydantic_settings import BaseSettings


_FILE_PATH = Path(__file__).resolve()


def _collect_env_files(file_path: Path) -> tuple[Path, ...]:
    """환경 파일 후보를 가까운 디렉터리부터 수집"""

    collected: list[Path] = []
    seen: set[Path] = set()

    for directory in file_path.parents:
        for name in (".env", ".env.local"):
            candidate = directory / name
            if candidate.exists() and candidate not in seen:
                collected.append(candidate)
                seen.add(candidate)

    return tuple(collected)


_ENV_FILES = _collect_env_files(_FILE_PATH)


def _load_dotenv_files() -> None:
    """프로젝트 전체에서 활용할 .env 파일들을 순차적으로 로드"""

    for dotenv_path in _ENV_FILES:
        load_dotenv(dotenv_path, override=False)


_load_dotenv_files()


class Settings(BaseSettings):
    """애플리케이션 설정"""

    # 서버 설정
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    PUBLIC_SITE_URL: str = "https://fitzhr.com"
    CORS_ALLOW_ORIGINS: str = "*"

    # 로깅 설정
    LOG_LEVEL: str = "INFO"

    # Supabase 설정 (웹훅은 사용자 대신 기록하므로 service role 키 필수)
    SUPABASE_URL: str
    SUPABASE_SERVICE_ROLE_KEY: str
    SUPABASE_ANON_KEY: Optional[str] = None

    # Stripe 설정
    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    # 시크릿이 있는데 서명 헤더가 없으면 거부
    STRIPE_WEBHOOK_STRICT_VERIFY: bool = True

    # 요금제 테이블 (JSON 파일로 기본 테이블 덮어쓰기)
    PLAN_CATALOG_PATH: Optional[str] = None

    # 권한 정책
    ANONYMOUS_USER_ID: str = "anonymous"
    PAYMENT_GRACE_PERIOD_DAYS: int = 7
    REFUND_WINDOW_DAYS: int = 14

    # 알림 (Telegram Bot API)
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None
    TELEGRAM_API_BASE_URL: str = "https://api.telegram.org"
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    @validator('SUPABASE_URL')
    def validate_supabase_url(cls, v):
        if not v:
            raise ValueError('SUPABASE_URL은 필수입니다')
        return v

    @validator('SUPABASE_SERVICE_ROLE_KEY')
    def validate_supabase_service_role_key(cls, v):
        if not v:
            raise ValueError('SUPABASE_SERVICE_ROLE_KEY는 필수입니다')
        return v

    @validator('STRIPE_SECRET_KEY')
    def validate_stripe_secret_key(cls, v):
        if not v:
            raise ValueError('STRIPE_SECRET_KEY는 필수입니다')
        return v

    @validator('STRIPE_WEBHOOK_SECRET')
    def normalize_webhook_secret(cls, v):
        # 빈 문자열은 미설정으로 취급
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ALLOW_ORIGINS.split(",") if origin.strip()]

    class Config:
        env_file = tuple(str(path) for path in _ENV_FILES) if _ENV_FILES else None
        case_sensitive = True
        extra = "allow"  # 추가 환경변수 허용


# 전역 설정 인스턴스
settings = Settings()
