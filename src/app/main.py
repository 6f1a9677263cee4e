from fastapi import FastAPI
import uvicorn
from contextlib import asynccontextmanager
import logging
from datetime import datetime

# Core imports
from core.config import settings
from core.factory import ServiceFactory
from core.middleware import setup_exception_handlers, setup_cors
from core.responses import success_response

# Routers Import
from routers import billing_router, stripe_webhook_router

# 로깅 설정
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # 클라이언트/서비스는 여기서만 생성하고 종료 시 해제
    ServiceFactory.configure_dependencies()
    store = ServiceFactory.get_entitlement_store()

    await store.log_system_event(
        event_type='server_start',
        event_data={'status': 'success', 'timestamp': datetime.now().isoformat()}
    )

    yield

    await store.log_system_event(
        event_type='server_stop',
        event_data={'status': 'success', 'timestamp': datetime.now().isoformat()}
    )
    ServiceFactory.shutdown()


app = FastAPI(
    title="FitzHR Billing Server",
    description="Stripe checkout, billing portal and subscription/credit entitlement webhooks",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.DEBUG
)

# 예외 처리 미들웨어 설정
setup_exception_handlers(app)

# CORS 미들웨어 추가
setup_cors(app, settings.cors_origins)


@app.get("/health")
async def health_check():
    # DB 헬스체크를 수행하지 않고 정적 상태만 반환
    return success_response(
        data={
            "database": {"checked": False},
            "timestamp": datetime.now().isoformat(),
            "version": "1.0.0",
            "environment": "development" if settings.DEBUG else "production"
        },
        message="헬스 체크(DB 미검사)"
    )

# 라우터 등록
app.include_router(stripe_webhook_router.router)  # Stripe 웹훅 라우터
app.include_router(billing_router.router)  # Checkout / 포털 / 권한 조회

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.DEBUG
    )
