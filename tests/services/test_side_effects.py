"""부수 효과 디스패처 테스트"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.billing_models import PaymentRecord
from services.side_effects import SideEffectDispatcher

from doubles import InMemoryStore, RecordingNotifier, user_row


def _payment(key="chk_1"):
    return PaymentRecord(
        user_id="user-1",
        amount=Decimal("39.90"),
        currency="usd",
        provider_checkout_id=key,
        status_label="COMPLETED",
        quantity=200,
        created_at=datetime(2025, 1, 20, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_record_payment_is_idempotent_per_key():
    store = InMemoryStore()
    effects = SideEffectDispatcher(store, RecordingNotifier())

    assert await effects.record_payment(_payment()) is True
    assert await effects.record_payment(_payment()) is False
    assert len(store.payments) == 1
    assert store.payments[0]["currency"] == "USD"
    assert store.payments[0]["price"] == pytest.approx(39.9)


@pytest.mark.asyncio
async def test_record_payment_storage_failure_is_swallowed():
    store = InMemoryStore()
    store.fail_on.add("insert_payment")
    effects = SideEffectDispatcher(store)

    assert await effects.record_payment(_payment()) is False


@pytest.mark.asyncio
async def test_clear_offer_updates_user():
    store = InMemoryStore(users=[user_row(offers=True)])
    effects = SideEffectDispatcher(store)

    assert await effects.clear_offer("user-1", "pro", Decimal("39.90")) is True
    assert store.users["user-1"]["offers"] is False
    assert store.users["user-1"]["offer_plan_buy"] == "pro"


@pytest.mark.asyncio
async def test_background_failures_do_not_raise_and_drain_waits():
    store = InMemoryStore()
    store.fail_on.add("record_conversion")
    notifier = RecordingNotifier(fail=True)
    effects = SideEffectDispatcher(store, notifier)

    effects.notify(membership="pro", is_subscription=True, email="a@example.com", name="A", credits=200)
    effects.record_conversion("user-1", Decimal("39.90"), "usd")
    await effects.drain()

    assert notifier.sent == []
    assert store.conversions == []


@pytest.mark.asyncio
async def test_notify_picks_template_by_membership():
    notifier = RecordingNotifier()
    effects = SideEffectDispatcher(InMemoryStore(), notifier)

    effects.notify(membership="super", is_subscription=True, email="a@example.com", name="A", credits=650)
    effects.notify(membership="team", is_subscription=True, email="a@example.com", name="A", credits=10)
    effects.notify(membership="add_on", is_subscription=False, email=None, name="A", credits=30)
    await effects.drain()

    assert [mail["kind"] for mail in notifier.sent] == [
        "super-purchase-confirmation",
        "saver-purchase-confirmation",
        "purchase-confirmation",
    ]
    assert notifier.sent[2]["email"] == ""


@pytest.mark.asyncio
async def test_notify_without_sender_is_skipped():
    effects = SideEffectDispatcher(InMemoryStore(), None)
    assert effects.notify(membership="pro", is_subscription=True, email="a@example.com", name="A", credits=1) is None
