"""
사용자 크레딧 조회 및 구독 해지 서비스
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.base_service import BaseService
from core.billing_models import CreditGrant, GrantStatus, Provider
from core.interfaces import ICreditService, IDatabaseHelper
from core.responses import AuthorizationException, ExternalServiceException, NotFoundException
from services.provider_api_client import PayPalBillingClient, PolarBillingClient, ProviderAPIError
from utils.payload import to_iso


class CreditService(BaseService, ICreditService):
    """크레딧 요약/구독 해지"""

    def __init__(
        self,
        db_helper: IDatabaseHelper,
        polar_client: Optional[PolarBillingClient] = None,
        paypal_client: Optional[PayPalBillingClient] = None,
    ):
        super().__init__(db_helper)
        self.polar_client = polar_client
        self.paypal_client = paypal_client

    async def _expire_exhausted_one_time(self, grants: List[CreditGrant]) -> List[CreditGrant]:
        """크레딧을 모두 쓴 일회성 레코드는 만료 처리"""
        remaining = []
        for grant in grants:
            if grant.is_one_time and grant.credits <= 0 and not grant.is_expired:
                expected = {"status": GrantStatus.ACTIVE.value, "credits": 0}
                if grant.updated_at is not None:
                    expected["updated_at"] = grant.updated_at
                await self.db_helper.update_grant(grant.id, {"status": GrantStatus.EXPIRED.value}, expected)
                self.logger.info("소진된 일회성 크레딧 만료 처리: grant=%s user=%s", grant.id, grant.user_id)
                continue
            remaining.append(grant)
        return remaining

    @staticmethod
    def _pick_detail_grant(grants: List[CreditGrant]) -> Optional[CreditGrant]:
        for grant in grants:
            if not grant.canceled and grant.is_linked:
                return grant
        for grant in grants:
            if not grant.canceled and grant.credits > 0:
                return grant
        return grants[0] if grants else None

    async def get_credit_summary(self, user_id: str) -> Dict[str, Any]:
        rows = await self.db_helper.list_user_grants(user_id)
        grants = [CreditGrant.from_row(row) for row in rows]
        ever_subscribed = any(not grant.is_one_time for grant in grants)

        active = [grant for grant in grants if grant.status is GrantStatus.ACTIVE]
        active = await self._expire_exhausted_one_time(active)
        # 최신 레코드 우선
        active.sort(
            key=lambda grant: grant.created_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )

        detail = self._pick_detail_grant(active)
        return {
            "credits": sum(grant.credits for grant in active),
            "membership": detail.membership if detail else None,
            "plan_type": detail.plan_type.value if detail else None,
            "expires_at": to_iso(detail.expires_at) if detail else None,
            "canceled": detail.canceled if detail else False,
            "subscription_id": detail.provider_subscription_id if detail else None,
            "provider": detail.provider if detail else None,
            "has_active_subscription": any(grant.is_linked and not grant.is_one_time for grant in active),
            "has_ever_had_subscription": ever_subscribed,
        }

    async def cancel_subscription(
        self,
        user_id: str,
        subscription_id: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """기간 종료 시 해지 예약 - 크레딧은 만료일까지 유지"""
        grant = await self._load_owned_grant(user_id, subscription_id)

        if grant.canceled:
            self.logger.info("이미 해지 예약된 구독: user=%s subscription=%s", user_id, subscription_id)
            return {"success": True, "provider": grant.provider, "expires_at": to_iso(grant.expires_at)}

        try:
            await self._cancel_at_provider(grant, reason)
        except ProviderAPIError as e:
            correlation_id = await self.record_failure(
                action="subscription_cancel",
                error=e,
                user_id=user_id,
                context={
                    "subscription_id": subscription_id,
                    "provider": grant.provider,
                    "provider_code": e.code,
                },
            )
            raise ExternalServiceException(grant.provider, f"{e} (지원 코드: {correlation_id})") from e

        updated = await self.db_helper.update_grant(
            grant.id,
            {"subscription_status_canceled": True},
            {"status": GrantStatus.ACTIVE.value},
        )
        if updated is None:
            # 웹훅이 먼저 상태를 바꾼 경우 - 공급자 해지는 이미 반영됨
            self.logger.warning("해지 플래그 갱신 생략 (레코드 상태 변경됨): grant=%s", grant.id)

        await self.log_user_action(
            user_id,
            "subscription_cancel_requested",
            {"subscription_id": subscription_id, "provider": grant.provider, "reason": reason},
        )
        return {"success": True, "provider": grant.provider, "expires_at": to_iso(grant.expires_at)}

    async def _load_owned_grant(self, user_id: str, subscription_id: str) -> CreditGrant:
        for provider in (Provider.POLAR.value, Provider.PAYPAL.value):
            row = await self.db_helper.find_grant_by_subscription(provider, subscription_id)
            if row:
                grant = CreditGrant.from_row(row)
                if grant.user_id != user_id:
                    self.logger.warning(
                        "타인 구독 해지 시도 차단: user=%s subscription=%s",
                        user_id,
                        subscription_id,
                    )
                    raise AuthorizationException("본인 구독만 해지할 수 있습니다")
                if grant.is_expired:
                    raise NotFoundException("이미 종료된 구독입니다")
                return grant
        raise NotFoundException("구독 정보를 찾을 수 없습니다")

    async def _cancel_at_provider(self, grant: CreditGrant, reason: Optional[str]) -> None:
        if grant.provider == Provider.PAYPAL.value:
            if not self.paypal_client:
                raise ExternalServiceException("paypal", "PayPal 연동 설정이 없어 해지를 진행할 수 없습니다")
            await self.paypal_client.cancel_subscription(
                grant.provider_subscription_id,
                reason or "User requested cancellation",
            )
            return

        if not self.polar_client:
            raise ExternalServiceException("polar", "Polar 연동 설정이 없어 해지를 진행할 수 없습니다")
        await self.polar_client.cancel_subscription(grant.provider_subscription_id)
