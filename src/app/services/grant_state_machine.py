"""크레딧 레코드 생애주기 상태 머신

created(unlinked) -> active -> (renewed)* -> active_canceled -> expired
active_canceled 는 uncanceled 이벤트로 active 로 되돌아갈 수 있다.
expired 는 종료 상태이며 이후 구매는 새 레코드로 처리한다.

모든 전이는 저장소 조건부 업데이트에 넘길 (fields, expected) 쌍으로 표현된다.
expected 에는 읽은 시점의 updated_at 이 들어가므로 동시에 다른 이벤트가
같은 행을 바꾸면 업데이트가 적용되지 않는다.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from core.billing_models import CreditGrant, EventKind, GrantStatus
from core.credit_calculator import compute_expiry, correct_yearly_expiry, months_until
from core.product_catalog import PlanType, ProductCatalogEntry
from utils.payload import to_iso


class GrantState(str, Enum):
    CREATED_UNLINKED = "created_unlinked"
    ACTIVE = "active"
    ACTIVE_CANCELED = "active_canceled"
    EXPIRED = "expired"


def state_of(grant: CreditGrant) -> GrantState:
    if grant.is_expired:
        return GrantState.EXPIRED
    if not grant.is_one_time and not grant.is_linked:
        return GrantState.CREATED_UNLINKED
    if grant.canceled:
        return GrantState.ACTIVE_CANCELED
    return GrantState.ACTIVE


def initial_state(product: ProductCatalogEntry, subscription_id: Optional[str] = None) -> GrantState:
    """신규 레코드 생성 직후 상태"""
    if product.is_subscription and not subscription_id:
        return GrantState.CREATED_UNLINKED
    return GrantState.ACTIVE


@dataclass(slots=True)
class Transition:
    event: EventKind
    source: GrantState
    target: GrantState
    fields: Dict[str, Any] = field(default_factory=dict)
    expected: Dict[str, Any] = field(default_factory=dict)
    noop_reason: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return self.noop_reason is not None


def _noop(event: EventKind, grant: CreditGrant, reason: str) -> Transition:
    state = state_of(grant)
    return Transition(event=event, source=state, target=state, noop_reason=reason)


def _expected(grant: CreditGrant, **conditions: Any) -> Dict[str, Any]:
    expected = dict(conditions)
    if grant.updated_at is not None:
        expected["updated_at"] = grant.updated_at
    return expected


def _same_instant(left: Optional[datetime], right: Optional[datetime]) -> bool:
    if left is None or right is None:
        return left is right
    return left == right


def activate(
    grant: CreditGrant,
    *,
    cancel_at_period_end: bool,
    credits: int,
    expires_at: Optional[datetime],
) -> Transition:
    """구독 ID로 찾은 기존 레코드에 대한 subscription.active 처리

    - expired: 무시 (revoke 는 되돌리지 않음)
    - cancel_at_period_end=True: 해지 예약 상태의 메타데이터 에코이므로 무시
    - 같은 기간 종료일로 이미 갱신됨: 무시 (재전송)
    - 그 외: 갱신 - 크레딧 덮어쓰기, 만료일 재계산, 해지 플래그 해제
    """
    event = EventKind.SUBSCRIPTION_ACTIVATED
    source = state_of(grant)
    if source is GrantState.EXPIRED:
        return _noop(event, grant, "expired")
    if cancel_at_period_end:
        return _noop(event, grant, "cancel_echo")
    if source is GrantState.ACTIVE and _same_instant(grant.expires_at, expires_at):
        return _noop(event, grant, "already_renewed")

    return Transition(
        event=event,
        source=source,
        target=GrantState.ACTIVE,
        fields={
            "credits": int(credits),
            "expires_at": to_iso(expires_at),
            "status": GrantStatus.ACTIVE.value,
            "subscription_status_canceled": False,
        },
        expected=_expected(
            grant,
            subscription_id=grant.provider_subscription_id,
            status=GrantStatus.ACTIVE.value,
        ),
    )


def link(
    grant: CreditGrant,
    *,
    subscription_id: str,
    credits: int,
    expires_at: Optional[datetime],
) -> Transition:
    """미연결(또는 추정 일치) 레코드에 구독 ID 연결 + 갱신 계산"""
    event = EventKind.SUBSCRIPTION_ACTIVATED
    source = state_of(grant)
    if source is GrantState.EXPIRED or grant.is_one_time:
        return _noop(event, grant, "not_linkable")

    return Transition(
        event=event,
        source=source,
        target=GrantState.ACTIVE,
        fields={
            "subscription_id": subscription_id,
            "credits": int(credits),
            "expires_at": to_iso(expires_at),
            "status": GrantStatus.ACTIVE.value,
            "subscription_status_canceled": False,
        },
        expected=_expected(
            grant,
            subscription_id=grant.provider_subscription_id,
            status=GrantStatus.ACTIVE.value,
        ),
    )


def cancel(
    grant: CreditGrant,
    *,
    period_end: Optional[datetime],
    started_at: Optional[datetime],
    now: Optional[datetime] = None,
    min_yearly_months: int = 6,
) -> Transition:
    """해지 예약: 만료일까지 크레딧은 유지, 해지 플래그 설정"""
    event = EventKind.SUBSCRIPTION_CANCELED
    source = state_of(grant)
    if source is GrantState.EXPIRED:
        return _noop(event, grant, "expired")

    current = now or datetime.now(timezone.utc)
    expires_at = correct_yearly_expiry(grant.plan_type, period_end, started_at, min_yearly_months)

    if grant.plan_type is PlanType.YEARLY and grant.expires_at is not None:
        # 저장된 연간 만료일이 충분히 멀면 공급자 값보다 신뢰한다
        if months_until(grant.expires_at, current) > min_yearly_months:
            expires_at = grant.expires_at

    if expires_at is None:
        expires_at = grant.expires_at or compute_expiry(grant.plan_type, None, current)

    if grant.canceled and _same_instant(grant.expires_at, expires_at):
        return _noop(event, grant, "already_canceled")

    return Transition(
        event=event,
        source=source,
        target=GrantState.ACTIVE_CANCELED,
        fields={
            "subscription_status_canceled": True,
            "expires_at": to_iso(expires_at),
        },
        expected=_expected(grant, status=GrantStatus.ACTIVE.value),
    )


def uncancel(grant: CreditGrant) -> Transition:
    event = EventKind.SUBSCRIPTION_UNCANCELED
    source = state_of(grant)
    if source is GrantState.EXPIRED:
        return _noop(event, grant, "expired")
    if not grant.canceled:
        return _noop(event, grant, "not_canceled")

    return Transition(
        event=event,
        source=source,
        target=GrantState.ACTIVE,
        fields={"subscription_status_canceled": False},
        expected=_expected(grant, status=GrantStatus.ACTIVE.value),
    )


def revoke(grant: CreditGrant) -> Transition:
    """즉시 종료 - 만료일과 무관하게 expired 로 전환"""
    event = EventKind.SUBSCRIPTION_REVOKED
    source = state_of(grant)
    if source is GrantState.EXPIRED:
        return _noop(event, grant, "already_expired")

    return Transition(
        event=event,
        source=source,
        target=GrantState.EXPIRED,
        fields={
            "status": GrantStatus.EXPIRED.value,
            "subscription_status_canceled": True,
        },
        expected=_expected(grant),
    )


def change_plan(
    grant: CreditGrant,
    product: ProductCatalogEntry,
    *,
    credits: int,
    expires_at: Optional[datetime],
) -> Transition:
    """플랜 변경: 멤버십/주기/크레딧 덮어쓰기, 상태는 유지"""
    event = EventKind.SUBSCRIPTION_UPDATED
    source = state_of(grant)
    if source is GrantState.EXPIRED:
        return _noop(event, grant, "expired")
    if grant.membership == product.membership.value and grant.plan_type is product.plan_type:
        return _noop(event, grant, "plan_unchanged")

    return Transition(
        event=event,
        source=source,
        target=source,
        fields={
            "membership": product.membership.value,
            "plan_type": product.plan_type.value,
            "credits": int(credits),
            "expires_at": to_iso(expires_at),
        },
        expected=_expected(grant, status=GrantStatus.ACTIVE.value),
    )
