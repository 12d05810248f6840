"""
결제 웹훅 정산 서비스

이벤트 종류별 진입점을 제공하며, 리졸버/멱등성 가드/상태 머신/크레딧 계산을 조합해
레코드 생성, 미연결 레코드 연결, 기존 레코드 갱신, 무시 중 하나를 결정한다.

이벤트 간 도착 순서는 보장되지 않으며 같은 이벤트가 동시에 여러 번 올 수 있다.
동시성 안전성은 저장소의 유니크 제약과 조건부 업데이트로만 확보한다.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from core.base_service import BaseService
from core.billing_models import (
    CreditGrant,
    EventKind,
    PaymentRecord,
    Provider,
    UserAccount,
    grant_row,
)
from core.credit_calculator import compute_credits, compute_expiry
from core.errors import (
    AlreadyApplied,
    RaceLostOnLink,
    StorageError,
    UnresolvedGrant,
    UnresolvedProduct,
    UnresolvedUser,
)
from core.interfaces import IDatabaseHelper, IReconciliationService
from core.product_catalog import ProductCatalog, ProductCatalogEntry
from services import grant_state_machine as machine
from services.grant_resolver import EntityResolver, ResolutionStep, ResolvedGrant
from services.idempotency_guard import GuardVerdict, IdempotencyGuard
from services.polar_events import CheckoutEvent, OrderEvent, RefundEvent, SubscriptionEvent
from services.side_effects import SideEffectDispatcher
from utils.payload import to_iso

ORDER_STATUS_LABELS = {
    "subscription_cycle": "RENEWAL",
    "subscription_update": "UPGRADE_PAYMENT",
    "purchase": "UPGRADE_PAYMENT",
}
DEFAULT_ORDER_STATUS_LABEL = "SUBSCRIPTION_PAYMENT"


class ReconciliationService(BaseService, IReconciliationService):
    """Polar 웹훅 정산 오케스트레이터"""

    PROVIDER = Provider.POLAR.value
    # 조건부 업데이트 충돌/유니크 경합 시 재해석 횟수
    MAX_ATTEMPTS = 3

    def __init__(
        self,
        db_helper: IDatabaseHelper,
        catalog: ProductCatalog,
        side_effects: SideEffectDispatcher,
        *,
        offer_bonus_percent: int = 25,
        correlation_window_seconds: int = 300,
        yearly_min_months: int = 6,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(db_helper)
        self.catalog = catalog
        self.side_effects = side_effects
        self.offer_bonus_percent = offer_bonus_percent
        self.yearly_min_months = yearly_min_months
        self.resolver = EntityResolver(db_helper, correlation_window_seconds)
        self.guard = IdempotencyGuard(db_helper, self.PROVIDER, correlation_window_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # 공통 보조

    def _require_product(self, product_id: Optional[str]) -> ProductCatalogEntry:
        product = self.catalog.get_product(product_id)
        if product is None:
            self.logger.warning("[POLAR] 카탈로그에 없는 상품: %s", product_id)
            raise UnresolvedProduct(product_id)
        return product

    def _credits_for(self, product: ProductCatalogEntry, has_offer: bool) -> int:
        return compute_credits(product.credits, has_offer, self.offer_bonus_percent)

    @staticmethod
    def _outcome(action: str, grant: Optional[CreditGrant] = None, **extra: Any) -> Dict[str, Any]:
        outcome: Dict[str, Any] = {"action": action}
        if grant is not None:
            outcome.update(
                {
                    "grant_id": grant.id,
                    "user_id": grant.user_id,
                    "subscription_id": grant.provider_subscription_id,
                    "credits": grant.credits,
                    "status": grant.status.value,
                    "canceled": grant.canceled,
                    "expires_at": to_iso(grant.expires_at),
                }
            )
        outcome.update({key: value for key, value in extra.items() if value is not None})
        return outcome

    async def _apply(self, grant: CreditGrant, transition: machine.Transition) -> Optional[CreditGrant]:
        """전이를 조건부 업데이트로 적용 - 조건 불일치면 None"""
        row = await self.db_helper.update_grant(grant.id, transition.fields, transition.expected)
        if row is None:
            self.logger.info(
                "[POLAR] 조건부 업데이트 불일치, 재시도 대상: grant=%s event=%s",
                grant.id,
                transition.event.value,
            )
            return None
        self.logger.info(
            "[POLAR] 상태 전이: grant=%s event=%s %s -> %s",
            grant.id,
            transition.event.value,
            transition.source.value,
            transition.target.value,
        )
        return CreditGrant.from_row(row)

    async def _transition_by_subscription(
        self,
        subscription_id: Optional[str],
        build: Callable[[CreditGrant], machine.Transition],
    ) -> Tuple[CreditGrant, Optional[CreditGrant], machine.Transition]:
        """구독 ID로 레코드를 읽고 전이를 적용 (충돌 시 다시 읽어 재시도)

        반환값: (적용 전 레코드, 적용 후 레코드 또는 None(무시), 전이)
        """
        if not subscription_id:
            raise UnresolvedGrant(subscription_id)

        for _ in range(self.MAX_ATTEMPTS):
            row = await self.db_helper.find_grant_by_subscription(self.PROVIDER, subscription_id)
            if not row:
                self.logger.warning("[POLAR] 구독에 연결된 레코드 없음 (재전송 대기): %s", subscription_id)
                raise UnresolvedGrant(subscription_id)

            before = CreditGrant.from_row(row)
            transition = build(before)
            if transition.is_noop:
                self.logger.info(
                    "[POLAR] 전이 생략: grant=%s event=%s reason=%s",
                    before.id,
                    transition.event.value,
                    transition.noop_reason,
                )
                return before, None, transition

            after = await self._apply(before, transition)
            if after is not None:
                return before, after, transition

        raise StorageError(f"구독 {subscription_id} 레코드 갱신 충돌이 반복되었습니다")

    async def _ensure_fresh_checkout(self, checkout_id: Optional[str], user_id: str) -> None:
        verdict = await self.guard.check(EventKind.CHECKOUT_COMPLETED, checkout_id, user_id, self._clock())
        if verdict is GuardVerdict.APPLIED:
            raise AlreadyApplied(EventKind.CHECKOUT_COMPLETED.value, checkout_id)
        if verdict is GuardVerdict.AMBIGUOUS:
            raise StorageError("중복 여부를 확인하지 못해 반영을 보류합니다")

    async def _apply_purchase_effects(
        self,
        *,
        user: UserAccount,
        product: ProductCatalogEntry,
        credits: int,
        has_offer: bool,
        payment_key: str,
        amount: Decimal,
        currency: str,
        payer_id: Optional[str],
    ) -> None:
        """신규 구매 부수 효과: 결제 기록, 오퍼 해제, 확인 메일, UTM 전환"""
        await self.side_effects.record_payment(
            PaymentRecord(
                user_id=user.id,
                amount=amount,
                currency=currency,
                provider_checkout_id=payment_key,
                status_label="COMPLETED",
                quantity=credits,
                provider=self.PROVIDER,
                payer_id=payer_id,
                payer_name=user.full_name,
                payer_email=user.email,
                created_at=self._clock(),
            )
        )
        if has_offer:
            await self.side_effects.clear_offer(user.id, product.membership.value, product.price)
        self.side_effects.notify(
            membership=product.membership.value,
            is_subscription=product.is_subscription,
            email=user.email,
            name=user.display_name,
            credits=credits,
        )
        self.side_effects.record_conversion(user.id, amount, currency)

    # checkout.updated

    async def handle_checkout_completed(self, event: CheckoutEvent) -> Dict[str, Any]:
        if not event.succeeded:
            self.logger.info("[POLAR] checkout %s 상태 %s - 처리 대상 아님", event.checkout_id, event.status)
            return self._outcome("ignored", reason="checkout_not_succeeded", checkout_id=event.checkout_id)

        user = await self.resolver.resolve_user(event)
        product = self._require_product(event.product_id)
        await self._ensure_fresh_checkout(event.checkout_id, user.id)

        has_offer = event.has_offer_flag or user.offers
        credits = self._credits_for(product, has_offer)
        now = self._clock()
        row = grant_row(
            user_id=user.id,
            provider=self.PROVIDER,
            plan_type=product.plan_type,
            membership=product.membership.value,
            credits=credits,
            expires_at=compute_expiry(product.plan_type, None, now),
            # 구독형은 activation 이벤트의 구독 ID로 나중에 연결
            subscription_id=None,
            checkout_id=event.checkout_id,
            now=now,
        )

        try:
            created = await self.db_helper.insert_grant(row)
        except RaceLostOnLink:
            verdict = await self.guard.check(EventKind.CHECKOUT_COMPLETED, event.checkout_id, user.id, self._clock())
            if verdict is GuardVerdict.APPLIED:
                raise AlreadyApplied(EventKind.CHECKOUT_COMPLETED.value, event.checkout_id)
            # 다른 미연결 구독 레코드가 슬롯을 점유 중 - 연결 이후 재전송으로 처리
            raise StorageError("미연결 구독 레코드가 이미 존재합니다")

        grant = CreditGrant.from_row(created)
        self.logger.info(
            "[POLAR] checkout 레코드 생성: grant=%s user=%s product=%s credits=%s state=%s offer=%s",
            grant.id,
            user.id,
            product.key,
            credits,
            machine.initial_state(product).value,
            has_offer,
        )

        await self._apply_purchase_effects(
            user=user,
            product=product,
            credits=credits,
            has_offer=has_offer,
            payment_key=event.checkout_id,
            amount=event.amount if event.amount is not None else product.price,
            currency=event.currency,
            payer_id=event.customer_id,
        )
        return self._outcome("created", grant, checkout_id=event.checkout_id, offer_applied=has_offer)

    # subscription.active

    async def handle_subscription_activated(self, event: SubscriptionEvent) -> Dict[str, Any]:
        if not event.subscription_id:
            self.logger.warning("[POLAR] subscription.active 페이로드에 구독 ID 없음")
            return self._outcome("ignored", reason="missing_subscription_id")

        # 갱신 페이로드에 사용자 힌트가 없으면 기존 레코드 소유자로 해석
        existing = await self.db_helper.find_grant_by_subscription(self.PROVIDER, event.subscription_id)
        user = await self.resolver.resolve_user(
            event,
            fallback_user_id=existing.get("user_id") if existing else None,
        )
        product = self._require_product(event.product_id)
        if not product.is_subscription:
            self.logger.warning("[POLAR] 일회성 상품의 구독 이벤트 무시: %s", product.key)
            return self._outcome("ignored", reason="not_subscription_product")

        for attempt in range(self.MAX_ATTEMPTS):
            resolved = await self.resolver.resolve_grant(
                user.id,
                self.PROVIDER,
                event.subscription_id,
                event.checkout_id,
                self._clock(),
            )
            try:
                if resolved is None:
                    return await self._create_linked_grant(event, user, product)
                if resolved.step is ResolutionStep.BY_SUBSCRIPTION:
                    outcome = await self._renew(resolved.grant, event, user, product)
                else:
                    outcome = await self._link(resolved, event, user, product)
            except RaceLostOnLink as e:
                self.logger.info(
                    "[POLAR] 구독 %s 처리 중 경합, 재해석 후 재시도 (attempt=%s): %s",
                    event.subscription_id,
                    attempt + 1,
                    e.constraint,
                )
                continue

            if outcome is not None:
                return outcome

        raise StorageError(f"구독 {event.subscription_id} 활성화 처리 충돌이 반복되었습니다")

    async def _renew(
        self,
        grant: CreditGrant,
        event: SubscriptionEvent,
        user: UserAccount,
        product: ProductCatalogEntry,
    ) -> Optional[Dict[str, Any]]:
        has_offer = user.offers
        credits = self._credits_for(product, has_offer)
        expires_at = compute_expiry(product.plan_type, event.current_period_end, self._clock())
        transition = machine.activate(
            grant,
            cancel_at_period_end=event.cancel_at_period_end,
            credits=credits,
            expires_at=expires_at,
        )
        if transition.is_noop:
            self.logger.info(
                "[POLAR] subscription.active 무시: grant=%s reason=%s",
                grant.id,
                transition.noop_reason,
            )
            return self._outcome("noop", grant, reason=transition.noop_reason)

        updated = await self._apply(grant, transition)
        if updated is None:
            return None
        if has_offer:
            await self.side_effects.clear_offer(user.id, product.membership.value, product.price)
        return self._outcome("renewed", updated, offer_applied=has_offer)

    async def _link(
        self,
        resolved: ResolvedGrant,
        event: SubscriptionEvent,
        user: UserAccount,
        product: ProductCatalogEntry,
    ) -> Optional[Dict[str, Any]]:
        grant = resolved.grant
        has_offer = event.has_offer_flag or user.offers
        credits = self._credits_for(product, has_offer)
        expires_at = compute_expiry(product.plan_type, event.current_period_end, self._clock())
        transition = machine.link(
            grant,
            subscription_id=event.subscription_id,
            credits=credits,
            expires_at=expires_at,
        )
        if transition.is_noop:
            return self._outcome("noop", grant, reason=transition.noop_reason)

        updated = await self._apply(grant, transition)
        if updated is None:
            return None

        self.logger.info(
            "[POLAR] 레코드 연결 완료: grant=%s subscription=%s via=%s",
            updated.id,
            event.subscription_id,
            resolved.step.value,
        )
        if has_offer:
            await self.side_effects.clear_offer(user.id, product.membership.value, product.price)
        return self._outcome("linked", updated, resolved_by=resolved.step.value, offer_applied=has_offer)

    async def _create_linked_grant(
        self,
        event: SubscriptionEvent,
        user: UserAccount,
        product: ProductCatalogEntry,
    ) -> Dict[str, Any]:
        has_offer = event.has_offer_flag or user.offers
        credits = self._credits_for(product, has_offer)
        now = self._clock()
        row = grant_row(
            user_id=user.id,
            provider=self.PROVIDER,
            plan_type=product.plan_type,
            membership=product.membership.value,
            credits=credits,
            expires_at=compute_expiry(product.plan_type, event.current_period_end, now),
            subscription_id=event.subscription_id,
            checkout_id=event.checkout_id,
            now=now,
        )
        created = CreditGrant.from_row(await self.db_helper.insert_grant(row))
        self.logger.info(
            "[POLAR] 구독 레코드 직접 생성: grant=%s user=%s subscription=%s credits=%s",
            created.id,
            user.id,
            event.subscription_id,
            credits,
        )

        await self._apply_purchase_effects(
            user=user,
            product=product,
            credits=credits,
            has_offer=has_offer,
            payment_key=event.checkout_id or event.subscription_id,
            amount=event.amount if event.amount is not None else product.price,
            currency=event.currency,
            payer_id=event.customer_id,
        )
        return self._outcome("created", created, offer_applied=has_offer)

    # subscription.canceled / uncanceled / revoked

    async def handle_subscription_canceled(self, event: SubscriptionEvent) -> Dict[str, Any]:
        now = self._clock()
        _, after, transition = await self._transition_by_subscription(
            event.subscription_id,
            lambda grant: machine.cancel(
                grant,
                period_end=event.cancellation_end,
                started_at=event.started_at or grant.created_at,
                now=now,
                min_yearly_months=self.yearly_min_months,
            ),
        )
        if after is None:
            return self._outcome("noop", reason=transition.noop_reason, subscription_id=event.subscription_id)
        return self._outcome("canceled", after)

    async def handle_subscription_uncanceled(self, event: SubscriptionEvent) -> Dict[str, Any]:
        _, after, transition = await self._transition_by_subscription(event.subscription_id, machine.uncancel)
        if after is None:
            return self._outcome("noop", reason=transition.noop_reason, subscription_id=event.subscription_id)
        return self._outcome("uncanceled", after)

    async def handle_subscription_revoked(self, event: SubscriptionEvent) -> Dict[str, Any]:
        _, after, transition = await self._transition_by_subscription(event.subscription_id, machine.revoke)
        if after is None:
            return self._outcome("noop", reason=transition.noop_reason, subscription_id=event.subscription_id)
        return self._outcome("revoked", after)

    # subscription.updated

    async def handle_subscription_updated(self, event: SubscriptionEvent) -> Dict[str, Any]:
        product = self._require_product(event.product_id)
        expires_at = compute_expiry(product.plan_type, event.current_period_end, self._clock())
        before, after, transition = await self._transition_by_subscription(
            event.subscription_id,
            lambda grant: machine.change_plan(grant, product, credits=product.credits, expires_at=expires_at),
        )
        if after is None:
            return self._outcome("noop", before, reason=transition.noop_reason)

        is_upgrade = product.credits > before.credits
        direction = "UPGRADE" if is_upgrade else "DOWNGRADE"
        self.logger.info(
            "[POLAR] 플랜 변경: grant=%s %s/%s -> %s/%s (%s)",
            after.id,
            before.membership,
            before.plan_type.value,
            product.membership.value,
            product.plan_type.value,
            direction,
        )

        try:
            user = await self.resolver.resolve_user(event, fallback_user_id=after.user_id)
        except UnresolvedUser:
            user = UserAccount(id=after.user_id)

        period_marker = to_iso(event.current_period_start) or "na"
        await self.side_effects.record_payment(
            PaymentRecord(
                user_id=user.id,
                amount=event.amount if event.amount is not None else product.price,
                currency=event.currency,
                provider_checkout_id=(
                    f"plan_change_{event.subscription_id}_{product.product_id or product.key}_{period_marker}"
                ),
                status_label=direction,
                quantity=product.credits,
                provider=self.PROVIDER,
                payer_id=event.customer_id,
                payer_name=user.full_name,
                payer_email=user.email,
                created_at=self._clock(),
            )
        )
        return self._outcome(
            "plan_changed",
            after,
            direction=direction.lower(),
            previous_membership=before.membership,
        )

    # order.paid

    async def handle_order_paid(self, event: OrderEvent) -> Dict[str, Any]:
        """결제 확인 기록 전용 - 크레딧 레코드는 변경하지 않음"""
        if not event.subscription_id:
            # 일회성 구매는 checkout.updated 에서 처리
            return self._outcome("ignored", reason="not_subscription_order", order_id=event.order_id)
        if not event.order_id:
            return self._outcome("ignored", reason="missing_order_id")

        row = await self.db_helper.find_grant_by_subscription(self.PROVIDER, event.subscription_id)
        if not row:
            self.logger.warning(
                "[POLAR] order.paid 구독 레코드 없음 (재전송 대기): order=%s subscription=%s",
                event.order_id,
                event.subscription_id,
            )
            raise UnresolvedGrant(event.subscription_id)

        grant = CreditGrant.from_row(row)
        user = await self.resolver.resolve_user(event, fallback_user_id=grant.user_id)
        product = self._require_product(event.product_id)
        label = ORDER_STATUS_LABELS.get(event.billing_reason or "", DEFAULT_ORDER_STATUS_LABEL)

        recorded = await self.side_effects.record_payment(
            PaymentRecord(
                user_id=user.id,
                amount=event.amount if event.amount is not None else product.price,
                currency=event.currency,
                provider_checkout_id=event.order_id,
                status_label=label,
                quantity=product.credits,
                provider=self.PROVIDER,
                payer_id=event.customer_id,
                payer_name=user.full_name,
                payer_email=user.email,
                created_at=self._clock(),
            )
        )
        return self._outcome(
            "recorded" if recorded else "already_recorded",
            order_id=event.order_id,
            user_id=user.id,
            status_label=label,
        )

    # refund.created

    async def handle_refund_created(self, event: RefundEvent) -> Dict[str, Any]:
        """환불은 로그만 남긴다 - 크레딧 회수는 관리자 작업"""
        self.logger.info(
            "[POLAR] 환불 생성 기록: refund=%s order=%s subscription=%s amount=%s reason=%s",
            event.refund_id,
            event.order_id,
            event.subscription_id,
            event.amount,
            event.reason,
        )
        await self.db_helper.log_system_event(
            event_type="polar_refund_created",
            event_data={
                "refund_id": event.refund_id,
                "order_id": event.order_id,
                "subscription_id": event.subscription_id,
                "amount": float(event.amount) if event.amount is not None else None,
                "currency": event.currency,
                "reason": event.reason,
            },
        )
        return self._outcome("logged", refund_id=event.refund_id)
