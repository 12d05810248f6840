"""
크레딧 레코드/결제 레코드/사용자 도메인 모델

저장소 행(dict)과 도메인 객체 사이의 변환을 담당한다.
저장소 컬럼명은 user_credits / payments 테이블 기준이다.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from core.product_catalog import PlanType
from utils.payload import parse_datetime, to_iso


class Provider(str, Enum):
    POLAR = "polar"
    PAYPAL = "paypal"


class GrantStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class EventKind(str, Enum):
    """정산 대상 이벤트 종류"""
    CHECKOUT_COMPLETED = "checkout.updated"
    SUBSCRIPTION_ACTIVATED = "subscription.active"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_UNCANCELED = "subscription.uncanceled"
    SUBSCRIPTION_REVOKED = "subscription.revoked"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    ORDER_PAID = "order.paid"
    REFUND_CREATED = "refund.created"


@dataclass
class CreditGrant:
    """구독/일회성 구매 1건의 크레딧 할당 레코드"""
    id: str
    user_id: str
    provider: str
    plan_type: PlanType
    membership: str
    credits: int
    status: GrantStatus
    canceled: bool = False
    provider_subscription_id: Optional[str] = None
    provider_checkout_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    # 조건부 업데이트에 쓰는 행 버전 (저장소 원본 문자열 그대로 유지)
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditGrant":
        return cls(
            id=str(row["id"]),
            user_id=row.get("user_id"),
            provider=row.get("payment_provider") or Provider.POLAR.value,
            plan_type=PlanType(row.get("plan_type") or PlanType.MONTHLY.value),
            membership=row.get("membership"),
            credits=int(row.get("credits") or 0),
            status=GrantStatus(row.get("status") or GrantStatus.ACTIVE.value),
            canceled=bool(row.get("subscription_status_canceled")),
            provider_subscription_id=row.get("subscription_id"),
            provider_checkout_id=row.get("polar_checkout_id"),
            expires_at=parse_datetime(row.get("expires_at")),
            created_at=parse_datetime(row.get("created_at")),
            updated_at=row.get("updated_at"),
        )

    @property
    def is_linked(self) -> bool:
        return self.provider_subscription_id is not None

    @property
    def is_expired(self) -> bool:
        return self.status is GrantStatus.EXPIRED

    @property
    def is_one_time(self) -> bool:
        return self.plan_type is PlanType.ONE_TIME


def grant_row(
    *,
    user_id: str,
    provider: str,
    plan_type: PlanType,
    membership: str,
    credits: int,
    expires_at: Optional[datetime],
    subscription_id: Optional[str] = None,
    checkout_id: Optional[str] = None,
    now: datetime,
) -> Dict[str, Any]:
    """신규 크레딧 레코드 insert 행 생성"""
    plan_type = PlanType(plan_type)
    if plan_type is PlanType.ONE_TIME:
        # 일회성 구매는 구독 ID/만료일을 갖지 않는다
        subscription_id = None
        expires_at = None

    timestamp = to_iso(now)
    row: Dict[str, Any] = {
        "user_id": user_id,
        "credits": int(credits),
        "status": GrantStatus.ACTIVE.value,
        "plan_type": plan_type.value,
        "membership": membership,
        "subscription_id": subscription_id,
        "expires_at": to_iso(expires_at),
        "payment_provider": provider,
        "subscription_status_canceled": False,
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    if checkout_id:
        row["polar_checkout_id"] = checkout_id
    return row


@dataclass
class PaymentRecord:
    """결제 원장 항목 (insert 전용)"""
    user_id: str
    amount: Decimal
    currency: str
    provider_checkout_id: str
    status_label: str
    quantity: int = 0
    provider: str = Provider.POLAR.value
    payer_id: Optional[str] = None
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        timestamp = to_iso(self.created_at)
        return {
            "user_id": self.user_id,
            "quantity": self.quantity,
            "price": float(self.amount),
            "currency": (self.currency or "USD").upper(),
            "payment_status": self.status_label,
            "payer_id": self.payer_id,
            "payer_name": self.payer_name or "",
            "payer_email": self.payer_email or "",
            "payment_provider": self.provider,
            "polar_checkout_id": self.provider_checkout_id,
            "created_at": timestamp,
            "updated_at": timestamp,
        }


@dataclass
class UserAccount:
    """정산에 필요한 사용자 프로필 정보"""
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    offers: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserAccount":
        return cls(
            id=str(row["id"]),
            email=row.get("email"),
            full_name=row.get("full_name"),
            offers=bool(row.get("offers")),
        )

    @property
    def display_name(self) -> str:
        return self.full_name or "User"
