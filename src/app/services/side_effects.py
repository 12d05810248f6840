"""상태 전이 이후 부수 효과 처리

결제 원장 기록과 오퍼 해제는 응답 전에 await 하되 실패는 로그만 남긴다.
메일 발송과 UTM 전환 기록은 백그라운드 태스크로 보내고 결과를 기다리지 않는다.
어떤 부수 효과의 실패도 웹훅 응답 결정에 영향을 주지 않는다.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Optional, Set

from core.billing_models import PaymentRecord
from core.errors import StorageError
from core.interfaces import IDatabaseHelper, INotificationSender
from services.notification_client import notification_kind

logger = logging.getLogger(__name__)


class SideEffectDispatcher:
    def __init__(self, db_helper: IDatabaseHelper, notification_sender: Optional[INotificationSender] = None):
        self.db_helper = db_helper
        self.notification_sender = notification_sender
        self._pending: Set[asyncio.Task] = set()

    async def record_payment(self, record: PaymentRecord) -> bool:
        """결제 기록 추가 - 이미 있으면 False (정상)"""
        try:
            if await self.db_helper.find_payment_by_checkout(record.provider_checkout_id):
                logger.info("[EFFECTS] 이미 기록된 결제: %s", record.provider_checkout_id)
                return False
            inserted = await self.db_helper.insert_payment(record.to_row())
            if inserted:
                logger.info(
                    "[EFFECTS] 결제 기록 완료: user=%s key=%s status=%s amount=%s",
                    record.user_id,
                    record.provider_checkout_id,
                    record.status_label,
                    record.amount,
                )
            return inserted
        except StorageError as e:
            logger.error("[EFFECTS] 결제 기록 실패: key=%s error=%s", record.provider_checkout_id, e)
            return False

    async def clear_offer(self, user_id: str, membership: str, price: Decimal) -> bool:
        """오퍼 보너스 적용 후 사용자 오퍼 플래그 해제"""
        cleared = await self.db_helper.clear_user_offer(user_id, membership, float(price))
        if not cleared:
            logger.error("[EFFECTS] 오퍼 해제 실패: user=%s", user_id)
        return cleared

    def notify(self, *, membership: str, is_subscription: bool, email: Optional[str], name: str, credits: int):
        """구매 확인 메일 발송 예약"""
        if self.notification_sender is None:
            logger.info("[EFFECTS] 알림 발송기가 없어 메일 발송을 생략합니다")
            return None
        kind = notification_kind(membership, is_subscription)
        return self._spawn("notification", self.notification_sender.send(kind, email or "", name, credits))

    def record_conversion(self, user_id: str, amount: Decimal, currency: str):
        """UTM 전환 기록 예약"""
        return self._spawn("attribution", self.db_helper.record_conversion(user_id, float(amount), currency))

    def _spawn(self, label: str, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(lambda finished: self._on_done(label, finished))
        return task

    def _on_done(self, label: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("[EFFECTS] %s 작업이 취소되었습니다", label)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[EFFECTS] %s 작업 실패: %s", label, exc)

    async def drain(self) -> None:
        """대기 중인 백그라운드 부수 효과 완료 대기 (종료/테스트용)"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
