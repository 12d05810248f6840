"""이벤트 반영 여부 판별기

checkout 완료 이벤트는 다음 순서로 이미 반영되었는지 확인한다.
1. 같은 checkout ID 의 결제 기록
2. 같은 checkout ID 를 가진 크레딧 레코드
3. 같은 사용자/공급자의 최근 생성 레코드 (식별자 컬럼이 없는 구버전 행 대비)

3번은 휴리스틱이다. 짧은 간격의 정상적인 두 번째 구매를 중복으로 오인할 수 있고,
창 밖에서 도착한 재전송은 걸러내지 못한다. 창 길이는 제품 판단 없이 바꾸지 않는다.

구독 이벤트는 상태 머신이 구조적으로 중복을 판별하므로 여기서는 항상 통과시킨다.
"""
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from core.billing_models import EventKind
from core.errors import StorageError
from core.interfaces import IDatabaseHelper

logger = logging.getLogger(__name__)


class GuardVerdict(str, Enum):
    FRESH = "fresh"
    APPLIED = "applied"
    # 판별 중 저장소 오류 - 반영된 것으로 간주하고 변경을 건너뛴다
    AMBIGUOUS = "ambiguous"


class IdempotencyGuard:
    def __init__(self, db_helper: IDatabaseHelper, provider: str, window_seconds: int = 300):
        self.db_helper = db_helper
        self.provider = provider
        self.window = timedelta(seconds=window_seconds)

    async def check(
        self,
        event_kind: EventKind,
        event_id: Optional[str],
        user_id_hint: Optional[str],
        now: Optional[datetime] = None,
    ) -> GuardVerdict:
        if EventKind(event_kind) is not EventKind.CHECKOUT_COMPLETED:
            return GuardVerdict.FRESH

        try:
            if event_id and await self.db_helper.find_payment_by_checkout(event_id):
                logger.info("[GUARD] 결제 기록으로 중복 확인: checkout=%s", event_id)
                return GuardVerdict.APPLIED

            if event_id and await self.db_helper.find_grant_by_checkout(event_id):
                logger.info("[GUARD] 크레딧 레코드로 중복 확인: checkout=%s", event_id)
                return GuardVerdict.APPLIED

            if user_id_hint:
                since = (now or datetime.now(timezone.utc)) - self.window
                recent = await self.db_helper.find_recent_grant(user_id_hint, self.provider, since)
                if recent:
                    logger.info(
                        "[GUARD] 최근 %s초 내 생성 레코드로 중복 추정: user=%s grant=%s checkout=%s",
                        int(self.window.total_seconds()),
                        user_id_hint,
                        recent.get("id"),
                        event_id,
                    )
                    return GuardVerdict.APPLIED
        except StorageError as e:
            logger.error("[GUARD] 중복 판별 실패, 반영 보류: checkout=%s error=%s", event_id, e)
            return GuardVerdict.AMBIGUOUS

        return GuardVerdict.FRESH

    async def already_applied(
        self,
        event_kind: EventKind,
        event_id: Optional[str],
        user_id_hint: Optional[str],
    ) -> bool:
        """이미 반영되었거나 판별할 수 없으면 True (fail closed)"""
        verdict = await self.check(event_kind, event_id, user_id_hint)
        return verdict is not GuardVerdict.FRESH
