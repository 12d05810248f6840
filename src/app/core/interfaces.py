"""
서비스 인터페이스 정의
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, Optional, List


class IAuthService(ABC):
    """인증 서비스 인터페이스"""

    @abstractmethod
    async def verify_auth(self, credentials) -> Any:
        """토큰 검증"""
        pass


class IDatabaseHelper(ABC):
    """데이터베이스 헬퍼 인터페이스 (정산 관련 테이블)"""

    @abstractmethod
    def supports(self, table: str, column: str) -> bool:
        """선택 컬럼 지원 여부"""
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """정산용 사용자 조회"""
        pass

    @abstractmethod
    async def find_grant_by_subscription(self, provider: str, subscription_id: str) -> Optional[Dict[str, Any]]:
        """구독 ID 기준 크레딧 레코드 조회"""
        pass

    @abstractmethod
    async def find_grant_by_checkout(self, checkout_id: str) -> Optional[Dict[str, Any]]:
        """checkout ID 기준 크레딧 레코드 조회"""
        pass

    @abstractmethod
    async def find_unlinked_grant(self, user_id: str, provider: str) -> Optional[Dict[str, Any]]:
        """미연결 크레딧 레코드 조회"""
        pass

    @abstractmethod
    async def find_recent_grant(
        self,
        user_id: str,
        provider: str,
        since: datetime,
        *,
        exclude_subscription_id: Optional[str] = None,
        subscription_only: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """최근 생성된 크레딧 레코드 조회"""
        pass

    @abstractmethod
    async def insert_grant(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """크레딧 레코드 생성"""
        pass

    @abstractmethod
    async def update_grant(
        self,
        grant_id: str,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """조건부 크레딧 레코드 업데이트"""
        pass

    @abstractmethod
    async def list_user_grants(self, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """사용자 크레딧 레코드 목록"""
        pass

    @abstractmethod
    async def find_payment_by_checkout(self, checkout_id: str) -> Optional[Dict[str, Any]]:
        """결제 기록 조회"""
        pass

    @abstractmethod
    async def insert_payment(self, row: Dict[str, Any]) -> bool:
        """결제 기록 추가"""
        pass

    @abstractmethod
    async def clear_user_offer(self, user_id: str, membership: str, price: float) -> bool:
        """오퍼 사용 처리"""
        pass

    @abstractmethod
    async def record_conversion(self, user_id: str, amount: float, currency: str) -> bool:
        """UTM 전환 기록"""
        pass

    @abstractmethod
    async def log_system_event(self, user_id: str = None, event_type: str = 'info', event_data: Dict = None,
                               ip_address: str = None, user_agent: str = None) -> bool:
        """시스템 이벤트 로깅"""
        pass


class IReconciliationService(ABC):
    """결제 웹훅 정산 서비스 인터페이스"""

    @abstractmethod
    async def handle_checkout_completed(self, event) -> Dict[str, Any]:
        """checkout 완료 처리"""
        pass

    @abstractmethod
    async def handle_subscription_activated(self, event) -> Dict[str, Any]:
        """구독 활성화/갱신 처리"""
        pass

    @abstractmethod
    async def handle_subscription_canceled(self, event) -> Dict[str, Any]:
        """구독 해지 예약 처리"""
        pass

    @abstractmethod
    async def handle_subscription_uncanceled(self, event) -> Dict[str, Any]:
        """구독 해지 예약 취소 처리"""
        pass

    @abstractmethod
    async def handle_subscription_revoked(self, event) -> Dict[str, Any]:
        """구독 즉시 종료 처리"""
        pass

    @abstractmethod
    async def handle_subscription_updated(self, event) -> Dict[str, Any]:
        """플랜 변경 처리"""
        pass

    @abstractmethod
    async def handle_order_paid(self, event) -> Dict[str, Any]:
        """주문 결제 확인 기록"""
        pass

    @abstractmethod
    async def handle_refund_created(self, event) -> Dict[str, Any]:
        """환불 생성 기록"""
        pass


class ICreditService(ABC):
    """사용자 크레딧 조회/구독 해지 서비스 인터페이스"""

    @abstractmethod
    async def get_credit_summary(self, user_id: str) -> Dict[str, Any]:
        """크레딧 요약 조회"""
        pass

    @abstractmethod
    async def cancel_subscription(self, user_id: str, subscription_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """사용자 요청 구독 해지"""
        pass


class INotificationSender(ABC):
    """구매 확인 알림 발송 인터페이스"""

    @abstractmethod
    async def send(self, kind: str, email: str, name: str, credits: int) -> bool:
        """알림 발송"""
        pass
