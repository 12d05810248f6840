"""정산 테스트용 더블과 페이로드 빌더"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.errors import RaceLostOnLink, StorageError
from core.product_catalog import Membership, PlanType, ProductCatalog, ProductCatalogEntry
from services.reconciliation_service import ReconciliationService
from services.side_effects import SideEffectDispatcher
from utils.payload import parse_datetime

NOW = datetime(2025, 1, 20, 12, 0, tzinfo=timezone.utc)

PRODUCT_IDS = {
    "basic_monthly": "prod_basic_m",
    "saver_monthly": "prod_saver_m",
    "pro_monthly": "prod_pro_m",
    "pro_yearly": "prod_pro_y",
    "super_monthly": "prod_super_m",
    "credits_30": "prod_credits_30",
}

TEST_PRODUCTS = [
    *ProductCatalog.DEFAULT_PRODUCTS.values(),
    ProductCatalogEntry("basic_monthly", Membership.BASIC, PlanType.MONTHLY, 100, Decimal("9.90")),
]


class InMemoryStore:
    """DatabaseHelper 대체 더블

    운영 DB 의 유니크 제약 3종과 조건부 업데이트를 흉내 낸다.
    모든 메서드는 한 번 이벤트 루프에 양보해 동시 처리 경합이 실제로 교차되게 한다.
    """

    def __init__(self, users: Optional[List[Dict[str, Any]]] = None, checkout_column: bool = True):
        self.users = {user["id"]: dict(user) for user in users or []}
        self.grants: List[Dict[str, Any]] = []
        self.payments: List[Dict[str, Any]] = []
        self.conversions: List[Dict[str, Any]] = []
        self.system_logs: List[Dict[str, Any]] = []
        self.checkout_column = checkout_column
        self.fail_on: set = set()
        self._seq = 0

    async def _tick(self, operation: str) -> None:
        await asyncio.sleep(0)
        if operation in self.fail_on:
            raise StorageError(f"{operation} 실패")

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def supports(self, table, column):
        return self.checkout_column

    # 사용자

    async def get_user(self, user_id):
        await self._tick("get_user")
        user = self.users.get(user_id)
        return dict(user) if user else None

    async def clear_user_offer(self, user_id, membership, price):
        await self._tick("clear_user_offer")
        user = self.users.get(user_id)
        if not user:
            return False
        user.update({"offers": False, "offer_plan_buy": membership, "offer_price_buy": price})
        return True

    # 크레딧 레코드

    async def find_grant_by_subscription(self, provider, subscription_id):
        await self._tick("find_grant_by_subscription")
        for row in self.grants:
            if row["payment_provider"] == provider and row.get("subscription_id") == subscription_id:
                return dict(row)
        return None

    async def find_grant_by_checkout(self, checkout_id):
        await self._tick("find_grant_by_checkout")
        if not checkout_id or not self.checkout_column:
            return None
        for row in self.grants:
            if row.get("polar_checkout_id") == checkout_id:
                return dict(row)
        return None

    async def find_unlinked_grant(self, user_id, provider):
        await self._tick("find_unlinked_grant")
        for row in reversed(self.grants):
            if (
                row["user_id"] == user_id
                and row["payment_provider"] == provider
                and row.get("subscription_id") is None
                and row["status"] == "active"
                and row["plan_type"] != "one_time"
            ):
                return dict(row)
        return None

    async def find_recent_grant(self, user_id, provider, since, *, exclude_subscription_id=None, subscription_only=False):
        await self._tick("find_recent_grant")
        for row in reversed(self.grants):
            if row["user_id"] != user_id or row["payment_provider"] != provider:
                continue
            if parse_datetime(row["created_at"]) < since:
                continue
            if subscription_only:
                if row["status"] != "active" or row["plan_type"] == "one_time":
                    continue
                if exclude_subscription_id and row.get("subscription_id") == exclude_subscription_id:
                    continue
            return dict(row)
        return None

    async def list_user_grants(self, user_id, status=None):
        await self._tick("list_user_grants")
        rows = [dict(row) for row in self.grants if row["user_id"] == user_id]
        if status:
            rows = [row for row in rows if row["status"] == status]
        return sorted(rows, key=lambda row: row["created_at"], reverse=True)

    def _violated_constraint(self, candidate: Dict[str, Any], ignore_id: Optional[str] = None) -> Optional[str]:
        for row in self.grants:
            if row["id"] == ignore_id:
                continue
            if (
                candidate.get("subscription_id") is not None
                and row.get("subscription_id") == candidate["subscription_id"]
                and row["payment_provider"] == candidate["payment_provider"]
            ):
                return "user_credits_provider_subscription_uniq"
            if candidate.get("polar_checkout_id") and row.get("polar_checkout_id") == candidate["polar_checkout_id"]:
                return "user_credits_polar_checkout_uniq"
            if self._is_unlinked_slot(candidate) and self._is_unlinked_slot(row):
                if row["user_id"] == candidate["user_id"] and row["payment_provider"] == candidate["payment_provider"]:
                    return "user_credits_unlinked_slot_uniq"
        return None

    @staticmethod
    def _is_unlinked_slot(row: Dict[str, Any]) -> bool:
        return row.get("subscription_id") is None and row.get("status") == "active" and row.get("plan_type") != "one_time"

    async def insert_grant(self, row):
        await self._tick("insert_grant")
        candidate = dict(row)
        if not self.checkout_column:
            candidate.pop("polar_checkout_id", None)
        constraint = self._violated_constraint(candidate)
        if constraint:
            raise RaceLostOnLink(constraint)
        candidate["id"] = self._next("grant")
        candidate["updated_at"] = self._next("v")
        self.grants.append(candidate)
        return dict(candidate)

    async def update_grant(self, grant_id, fields, expected=None):
        await self._tick("update_grant")
        row = next((row for row in self.grants if row["id"] == grant_id), None)
        if row is None:
            return None
        for column, value in (expected or {}).items():
            if row.get(column) != value:
                return None
        constraint = self._violated_constraint({**row, **fields}, ignore_id=grant_id)
        if constraint:
            raise RaceLostOnLink(constraint)
        row.update(fields)
        row["updated_at"] = self._next("v")
        return dict(row)

    def grant(self, grant_id: str) -> Dict[str, Any]:
        return next(row for row in self.grants if row["id"] == grant_id)

    # 결제 원장

    async def find_payment_by_checkout(self, checkout_id):
        await self._tick("find_payment_by_checkout")
        if not checkout_id or not self.checkout_column:
            return None
        for row in self.payments:
            if row.get("polar_checkout_id") == checkout_id:
                return {"id": row["id"]}
        return None

    async def insert_payment(self, row):
        await self._tick("insert_payment")
        if any(existing.get("polar_checkout_id") == row.get("polar_checkout_id") for existing in self.payments):
            return False
        self.payments.append({**row, "id": self._next("payment")})
        return True

    # 어트리뷰션/로그

    async def record_conversion(self, user_id, amount, currency):
        await self._tick("record_conversion")
        self.conversions.append({"user_id": user_id, "amount": amount, "currency": currency})
        return True

    async def log_system_event(self, user_id=None, event_type="info", event_data=None, ip_address=None, user_agent=None):
        self.system_logs.append({"user_id": user_id, "event_type": event_type, "event_data": event_data or {}})
        return True

    async def has_processed_webhook_event(self, provider, event_id):
        return any(
            log["event_type"] == f"{provider}_webhook" and log["event_data"].get("event_id") == event_id
            for log in self.system_logs
        )

    async def record_webhook_event(self, provider, event_id, status, payload=None):
        return await self.log_system_event(
            user_id=(payload or {}).get("user_id"),
            event_type=f"{provider}_webhook",
            event_data={"event_id": event_id, "status": status, "payload": payload},
        )


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send(self, kind, email, name, credits):
        if self.fail:
            raise RuntimeError("mail api down")
        self.sent.append({"kind": kind, "email": email, "name": name, "credits": credits})
        return True


def make_catalog() -> ProductCatalog:
    return ProductCatalog(PRODUCT_IDS, products=TEST_PRODUCTS)


def make_service(store: InMemoryStore, notifier=None, *, bonus_percent: int = 20, now: datetime = NOW):
    side_effects = SideEffectDispatcher(store, notifier if notifier is not None else RecordingNotifier())
    return ReconciliationService(
        store,
        make_catalog(),
        side_effects,
        offer_bonus_percent=bonus_percent,
        correlation_window_seconds=300,
        clock=lambda: now,
    )


def user_row(user_id: str = "user-1", offers: bool = False) -> Dict[str, Any]:
    return {"id": user_id, "email": f"{user_id}@example.com", "full_name": "Jamie Doe", "offers": offers}


def checkout_data(
    checkout_id: str = "chk_1",
    product_id: str = "prod_pro_m",
    user_id: str = "user-1",
    status: str = "succeeded",
    **metadata: Any,
) -> Dict[str, Any]:
    return {
        "id": checkout_id,
        "status": status,
        "product_id": product_id,
        "total_amount": 3990,
        "currency": "usd",
        "customer_id": "cus_1",
        "metadata": {"userId": user_id, **metadata},
    }


def subscription_data(
    subscription_id: str = "sub_1",
    product_id: str = "prod_pro_m",
    user_id: str = "user-1",
    *,
    period_end: str = "2025-02-20T12:00:00Z",
    period_start: str = "2025-01-20T12:00:00Z",
    cancel_at_period_end: bool = False,
    checkout_id: Optional[str] = None,
    started_at: Optional[str] = None,
    **metadata: Any,
) -> Dict[str, Any]:
    data = {
        "id": subscription_id,
        "status": "active",
        "product_id": product_id,
        "amount": 3990,
        "currency": "usd",
        "customer_id": "cus_1",
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "customer": {"external_id": user_id},
        "metadata": dict(metadata),
    }
    if checkout_id:
        data["checkout_id"] = checkout_id
    if started_at:
        data["started_at"] = started_at
    return data
