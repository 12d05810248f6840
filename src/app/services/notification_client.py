"""구매 확인 메일 발송 클라이언트"""
import logging
from typing import Dict, Optional

from core.interfaces import INotificationSender
from core.product_catalog import Membership
from services.provider_api_client import ProviderAPIClient, ProviderAPIError

logger = logging.getLogger(__name__)

SUBSCRIPTION_NOTIFICATION_KINDS = {
    Membership.PRO.value: "pro-purchase-confirmation",
    Membership.SUPER.value: "super-purchase-confirmation",
    Membership.SAVER.value: "saver-purchase-confirmation",
}
ONE_TIME_NOTIFICATION_KIND = "purchase-confirmation"


def notification_kind(membership: Optional[str], is_subscription: bool) -> str:
    """(멤버십, 구독 여부)로 메일 템플릿 종류 결정 - 그 외 구독 멤버십은 saver 템플릿 사용"""
    if not is_subscription:
        return ONE_TIME_NOTIFICATION_KIND
    return SUBSCRIPTION_NOTIFICATION_KINDS.get(membership or "", SUBSCRIPTION_NOTIFICATION_KINDS[Membership.SAVER.value])


class NotificationClient(ProviderAPIClient, INotificationSender):
    """메일 발송 API 호출 (실패해도 예외를 올리지 않음)"""

    PROVIDER = "notification"

    def __init__(self, endpoint_url: Optional[str], api_key: Optional[str] = None, **kwargs) -> None:
        super().__init__(endpoint_url or "", **kwargs)
        self.api_key = api_key

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def send(self, kind: str, email: str, name: str, credits: int) -> bool:
        if not self.enabled:
            logger.warning("[NOTIFY] NOTIFICATION_API_URL 미설정으로 메일 발송을 건너뜁니다: kind=%s", kind)
            return False
        if not email:
            logger.warning("[NOTIFY] 수신 이메일이 없어 메일 발송을 건너뜁니다: kind=%s", kind)
            return False

        payload = {
            "type": kind,
            "email": email,
            "creatorName": name,
            "credits": str(credits),
        }
        try:
            await self._request("POST", "", json=payload)
        except ProviderAPIError as e:
            logger.error("[NOTIFY] 메일 발송 실패: kind=%s status=%s error=%s", kind, e.status_code, e)
            return False

        logger.info("[NOTIFY] 메일 발송 완료: kind=%s", kind)
        return True
