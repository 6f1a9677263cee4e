"""테스트 공통 설정

core.config는 임포트 시 Settings()를 만들기 때문에 필수 환경변수를 먼저 채웁니다.
"""
import os

os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-test-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
