"""
서비스 팩토리 - 의존성 주입 설정
"""
from supabase import Client, create_client
import logging

from core.config import settings
from core.container import container
from core.interfaces import IAuthService, IEntitlementStore, INotifier, IPaymentGateway
from core.plan_catalog import PlanCatalog
from services.auth_service import AuthService
from services.entitlement_reconciler import EntitlementReconciler
from services.entitlement_store import SupabaseEntitlementStore
from services.error_reporter import ErrorReporter
from services.notification_client import NotificationClient
from services.stripe_gateway import StripeGateway
from services.webhook_verifier import StripeWebhookVerifier

logger = logging.getLogger(__name__)


class ServiceFactory:
    """서비스 의존성 등록 및 초기화"""

    @staticmethod
    def configure_dependencies():
        """의존성 주입 컨테이너 설정"""
        # 외부 클라이언트 생성 (웹훅은 사용자 대신 기록하므로 service role 사용)
        supabase_admin = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
        supabase_client = supabase_admin
        if settings.SUPABASE_ANON_KEY:
            supabase_client = create_client(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)
        container.register_singleton(Client, supabase_admin)

        gateway = StripeGateway(api_key=settings.STRIPE_SECRET_KEY)
        container.register_singleton(IPaymentGateway, gateway)
        container.register_singleton(StripeGateway, gateway)

        catalog = PlanCatalog.load(settings.PLAN_CATALOG_PATH)
        container.register_singleton(PlanCatalog, catalog)
        logger.info("[STRIPE] plan catalog loaded: version=%s products=%s", catalog.version, len(catalog.entries))

        store = SupabaseEntitlementStore(supabase_admin)
        container.register_singleton(IEntitlementStore, store)

        error_reporter = ErrorReporter(store)
        container.register_singleton(ErrorReporter, error_reporter)

        notifier = NotificationClient(
            bot_token=settings.TELEGRAM_BOT_TOKEN,
            chat_id=settings.TELEGRAM_CHAT_ID,
            base_url=settings.TELEGRAM_API_BASE_URL,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
        if not notifier.configured:
            logger.warning("[NOTIFY] TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID가 설정되지 않아 알림을 보내지 않습니다.")
        container.register_singleton(INotifier, notifier)

        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.warning("[STRIPE] STRIPE_WEBHOOK_SECRET이 설정되지 않아 웹훅 서명을 검증하지 않습니다.")
        container.register_transient(
            StripeWebhookVerifier,
            lambda: StripeWebhookVerifier(
                settings.STRIPE_WEBHOOK_SECRET,
                strict=settings.STRIPE_WEBHOOK_STRICT_VERIFY,
            ),
        )

        reconciler = EntitlementReconciler(
            store,
            gateway,
            catalog,
            notifier=notifier,
            error_reporter=error_reporter,
            anonymous_user_id=settings.ANONYMOUS_USER_ID,
            grace_period_days=settings.PAYMENT_GRACE_PERIOD_DAYS,
            refund_window_days=settings.REFUND_WINDOW_DAYS,
        )
        container.register_singleton(EntitlementReconciler, reconciler)

        auth_service = AuthService(supabase_client, store)
        container.register_singleton(IAuthService, auth_service)
        container.register_singleton(AuthService, auth_service)

    @staticmethod
    def shutdown():
        """등록된 클라이언트 참조 해제"""
        container.clear()
        logger.info("서비스 컨테이너 정리 완료")

    @staticmethod
    def get_auth_service() -> AuthService:
        """인증 서비스 조회"""
        return container.get(AuthService)

    @staticmethod
    def get_entitlement_store() -> IEntitlementStore:
        """권한 저장소 조회"""
        return container.get(IEntitlementStore)

    @staticmethod
    def get_stripe_gateway() -> StripeGateway:
        """Stripe 게이트웨이 조회"""
        return container.get(StripeGateway)

    @staticmethod
    def get_plan_catalog() -> PlanCatalog:
        """요금제 테이블 조회"""
        return container.get(PlanCatalog)

    @staticmethod
    def get_webhook_verifier() -> StripeWebhookVerifier:
        """웹훅 검증기 조회"""
        return container.get(StripeWebhookVerifier)

    @staticmethod
    def get_reconciler() -> EntitlementReconciler:
        """권한 정산기 조회"""
        return container.get(EntitlementReconciler)
