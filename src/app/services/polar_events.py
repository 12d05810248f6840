"""Polar 웹훅 페이로드 정규화

Polar 는 snake_case JSON 을 보내지만, SDK 를 거친 재전송/수동 리플레이 페이로드는
camelCase 인 경우가 있어 두 형태를 모두 읽는다.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from utils.payload import as_bool, first_present, parse_datetime, to_decimal


def _metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    raw = data.get("metadata")
    return raw if isinstance(raw, dict) else {}


def _amount_from_cents(value: Any) -> Optional[Decimal]:
    cents = to_decimal(value)
    if cents is None:
        return None
    return (cents / Decimal(100)).quantize(Decimal("0.01"))


def _external_customer_id(data: Dict[str, Any]) -> Optional[str]:
    return first_present(
        data,
        ("customer", "external_id"),
        ("customer", "externalId"),
        "external_customer_id",
        "externalCustomerId",
        "customer_external_id",
        "customerExternalId",
    )


def _customer_email(data: Dict[str, Any]) -> Optional[str]:
    return first_present(data, "customer_email", "customerEmail", ("customer", "email"))


def _product_id(data: Dict[str, Any]) -> Optional[str]:
    product_id = first_present(data, "product_id", "productId", ("product", "id"))
    if product_id:
        return product_id
    items = data.get("items") or data.get("products") or []
    for item in items if isinstance(items, list) else []:
        if isinstance(item, dict):
            candidate = first_present(item, "product_id", "productId", ("product", "id"))
            if candidate:
                return candidate
    return None


@dataclass(slots=True)
class PolarEvent:
    """이벤트 공통 필드"""
    metadata: Dict[str, Any] = field(default_factory=dict)
    external_customer_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    product_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "USD"

    @property
    def metadata_user_id(self) -> Optional[str]:
        value = self.metadata.get("userId") or self.metadata.get("user_id")
        return str(value) if value else None

    @property
    def has_offer_flag(self) -> bool:
        return as_bool(self.metadata.get("hasOffer") or self.metadata.get("has_offer"))


def _common(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "metadata": _metadata(data),
        "external_customer_id": _external_customer_id(data),
        "customer_id": first_present(data, "customer_id", "customerId", ("customer", "id")),
        "customer_email": _customer_email(data),
        "product_id": _product_id(data),
        "amount": _amount_from_cents(first_present(data, "total_amount", "totalAmount", "amount")),
        "currency": str(first_present(data, "currency", default="USD")).upper(),
    }


@dataclass(slots=True)
class CheckoutEvent(PolarEvent):
    checkout_id: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CheckoutEvent":
        return cls(
            checkout_id=data.get("id"),
            status=(data.get("status") or "").lower() or None,
            subscription_id=first_present(data, "subscription_id", "subscriptionId"),
            **_common(data),
        )

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(slots=True)
class SubscriptionEvent(PolarEvent):
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    checkout_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "SubscriptionEvent":
        return cls(
            subscription_id=data.get("id"),
            status=(data.get("status") or "").lower() or None,
            checkout_id=first_present(data, "checkout_id", "checkoutId"),
            current_period_start=parse_datetime(first_present(data, "current_period_start", "currentPeriodStart")),
            current_period_end=parse_datetime(first_present(data, "current_period_end", "currentPeriodEnd")),
            started_at=parse_datetime(first_present(data, "started_at", "startedAt")),
            ends_at=parse_datetime(first_present(data, "ends_at", "endsAt")),
            cancel_at=parse_datetime(first_present(data, "cancel_at", "cancelAt")),
            cancel_at_period_end=as_bool(first_present(data, "cancel_at_period_end", "cancelAtPeriodEnd")),
            **_common(data),
        )

    @property
    def cancellation_end(self) -> Optional[datetime]:
        """해지 시 만료일 후보: 기간 종료일 > ends_at > cancel_at"""
        return self.current_period_end or self.ends_at or self.cancel_at


@dataclass(slots=True)
class OrderEvent(PolarEvent):
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    checkout_id: Optional[str] = None
    billing_reason: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "OrderEvent":
        return cls(
            order_id=data.get("id"),
            subscription_id=first_present(data, "subscription_id", "subscriptionId", ("subscription", "id")),
            checkout_id=first_present(data, "checkout_id", "checkoutId"),
            billing_reason=first_present(data, "billing_reason", "billingReason"),
            **_common(data),
        )


@dataclass(slots=True)
class RefundEvent(PolarEvent):
    refund_id: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RefundEvent":
        return cls(
            refund_id=data.get("id"),
            order_id=first_present(data, "order_id", "orderId"),
            subscription_id=first_present(data, "subscription_id", "subscriptionId"),
            reason=data.get("reason"),
            **_common(data),
        )
