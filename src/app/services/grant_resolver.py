"""웹훅 페이로드에서 사용자와 대상 크레딧 레코드를 찾는 리졸버"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from core.billing_models import CreditGrant, UserAccount
from core.errors import UnresolvedUser
from core.interfaces import IDatabaseHelper
from services.polar_events import PolarEvent

logger = logging.getLogger(__name__)


class ResolutionStep(str, Enum):
    """레코드를 찾은 단계 (검색 순서와 동일)"""
    BY_SUBSCRIPTION = "by_subscription"
    UNLINKED = "unlinked"
    BY_CHECKOUT = "by_checkout"
    RECENT = "recent"


@dataclass(slots=True)
class ResolvedGrant:
    grant: CreditGrant
    step: ResolutionStep


class EntityResolver:
    """사용자/크레딧 레코드 해석기"""

    def __init__(self, db_helper: IDatabaseHelper, correlation_window_seconds: int = 300):
        self.db_helper = db_helper
        self.correlation_window = timedelta(seconds=correlation_window_seconds)

    async def resolve_user(self, event: PolarEvent, fallback_user_id: Optional[str] = None) -> UserAccount:
        """메타데이터 userId > 외부 고객 ID > (구독 레코드 소유자) 순으로 사용자 확인

        Polar 내부 customer id 는 사용하지 않는다 (내부 사용자와 매핑이 보장되지 않음).
        """
        candidates = [event.metadata_user_id, event.external_customer_id, fallback_user_id]
        tried = []
        for candidate in candidates:
            if not candidate or candidate in tried:
                continue
            tried.append(candidate)
            row = await self.db_helper.get_user(candidate)
            if row:
                return UserAccount.from_row(row)
            logger.warning("[RESOLVER] 사용자 레코드 없음: %s", candidate)

        raise UnresolvedUser(
            "웹훅 페이로드에서 사용자를 찾을 수 없습니다",
            user_id=tried[0] if tried else None,
        )

    async def resolve_grant(
        self,
        user_id: str,
        provider: str,
        subscription_id: Optional[str],
        checkout_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[ResolvedGrant]:
        """구독 ID > 미연결 레코드 > checkout ID > 최근 생성 레코드 순으로 첫 일치 반환

        checkout 완료와 구독 활성화 이벤트는 도착 순서가 정해져 있지 않으므로
        하나의 구매에 대해 레코드가 중복 생성되지 않도록 이 순서를 지킨다.
        """
        if subscription_id:
            row = await self.db_helper.find_grant_by_subscription(provider, subscription_id)
            if row:
                return ResolvedGrant(CreditGrant.from_row(row), ResolutionStep.BY_SUBSCRIPTION)

        row = await self.db_helper.find_unlinked_grant(user_id, provider)
        if row:
            return ResolvedGrant(CreditGrant.from_row(row), ResolutionStep.UNLINKED)

        if checkout_id:
            row = await self.db_helper.find_grant_by_checkout(checkout_id)
            if row and self._is_linkable(row, user_id, subscription_id):
                return ResolvedGrant(CreditGrant.from_row(row), ResolutionStep.BY_CHECKOUT)

        since = (now or datetime.now(timezone.utc)) - self.correlation_window
        row = await self.db_helper.find_recent_grant(
            user_id,
            provider,
            since,
            exclude_subscription_id=subscription_id,
            subscription_only=True,
        )
        if row:
            logger.info(
                "[RESOLVER] 최근 생성 레코드로 연결 대상 추정: grant=%s user=%s subscription=%s",
                row.get("id"),
                user_id,
                subscription_id,
            )
            return ResolvedGrant(CreditGrant.from_row(row), ResolutionStep.RECENT)

        return None

    @staticmethod
    def _is_linkable(row, user_id: str, subscription_id: Optional[str]) -> bool:
        """checkout 으로 찾은 레코드가 이 사용자의 미연결 구독형 레코드인지"""
        grant = CreditGrant.from_row(row)
        if grant.user_id != user_id or grant.is_one_time or grant.is_expired:
            return False
        return grant.provider_subscription_id in (None, subscription_id)
