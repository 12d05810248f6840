"""
서비스 팩토리 - 의존성 주입 설정
"""
from supabase import Client, create_client
import logging

from core.config import settings
from core.container import container
from core.interfaces import (
    IAuthService, IDatabaseHelper, IReconciliationService,
    ICreditService, INotificationSender,
)
from core.product_catalog import ProductCatalog
from database_helper import DatabaseHelper
from services.auth_service import AuthService
from services.credit_service import CreditService
from services.notification_client import NotificationClient
from services.provider_api_client import PayPalBillingClient, PolarBillingClient
from services.reconciliation_service import ReconciliationService
from services.side_effects import SideEffectDispatcher

logger = logging.getLogger(__name__)

class ServiceFactory:
    """서비스 의존성 등록 및 초기화"""

    @staticmethod
    def configure_dependencies():
        """의존성 주입 컨테이너 설정"""
        # 외부 클라이언트 생성
        supabase_client = create_client(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)
        supabase_admin = None
        if settings.SUPABASE_SERVICE_ROLE_KEY:
            supabase_admin = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
        else:
            logger.warning("[SUPABASE] SUPABASE_SERVICE_ROLE_KEY가 없어 anon 클라이언트로 정산 테이블에 접근합니다.")
        container.register_singleton(Client, supabase_client)

        # 결제 공급자 API 클라이언트 (자격 증명이 있을 때만)
        if settings.POLAR_ACCESS_TOKEN:
            polar_client = PolarBillingClient(
                access_token=settings.POLAR_ACCESS_TOKEN,
                base_url=settings.polar_api_base_url,
            )
            container.register_singleton(PolarBillingClient, polar_client)
        else:
            logger.warning("[POLAR] POLAR_ACCESS_TOKEN이 설정되지 않아 PolarBillingClient를 초기화하지 않습니다.")

        if settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET:
            paypal_client = PayPalBillingClient(
                client_id=settings.PAYPAL_CLIENT_ID,
                client_secret=settings.PAYPAL_CLIENT_SECRET,
                base_url=settings.PAYPAL_API_BASE_URL,
            )
            container.register_singleton(PayPalBillingClient, paypal_client)
        else:
            logger.warning("[PAYPAL] PayPal 자격 증명이 없어 PayPalBillingClient를 초기화하지 않습니다.")

        # DatabaseHelper 싱글톤 등록
        db_helper = DatabaseHelper(supabase_client, supabase_admin, settings.optional_columns())
        container.register_singleton(IDatabaseHelper, db_helper)
        container.register_singleton(DatabaseHelper, db_helper)

        catalog = ProductCatalog.from_settings(settings)
        container.register_singleton(ProductCatalog, catalog)

        notification_client = NotificationClient(settings.NOTIFICATION_API_URL, settings.NOTIFICATION_API_KEY)
        container.register_singleton(INotificationSender, notification_client)

        side_effects = SideEffectDispatcher(db_helper, notification_client)
        container.register_singleton(SideEffectDispatcher, side_effects)

        reconciliation_service = ReconciliationService(
            db_helper,
            catalog,
            side_effects,
            offer_bonus_percent=settings.OFFER_BONUS_PERCENT,
            correlation_window_seconds=settings.IDEMPOTENCY_WINDOW_SECONDS,
            yearly_min_months=settings.YEARLY_MIN_EXPIRY_MONTHS,
        )
        container.register_singleton(IReconciliationService, reconciliation_service)

        auth_service = AuthService(supabase_client, db_helper)
        container.register_singleton(IAuthService, auth_service)

        # 공급자 클라이언트는 Optional 힌트로 자동 연결
        container.register_service(ICreditService, CreditService)

    @staticmethod
    def get_auth_service() -> IAuthService:
        """인증 서비스 조회"""
        return container.get(IAuthService)

    @staticmethod
    def get_db_helper() -> IDatabaseHelper:
        """DB 헬퍼 조회"""
        return container.get(IDatabaseHelper)

    @staticmethod
    def get_reconciliation_service() -> IReconciliationService:
        """정산 서비스 조회"""
        return container.get(IReconciliationService)

    @staticmethod
    def get_credit_service() -> ICreditService:
        """크레딧 서비스 조회"""
        return container.get(ICreditService)

    @staticmethod
    def get_side_effects() -> SideEffectDispatcher:
        """부수 효과 디스패처 조회"""
        return container.get(SideEffectDispatcher)
