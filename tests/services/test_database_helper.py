"""DatabaseHelper Supabase 쿼리/오류 변환 테스트"""
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest
from postgrest.exceptions import APIError

from core.errors import RaceLostOnLink, SchemaColumnMissing, StorageError
from database_helper import DatabaseHelper


class _Result:
    def __init__(self, data):
        self.data = data


class _Query:
    """postgrest 쿼리 빌더 체인 더블"""

    def __init__(self, client: "_FakeClient", table: str) -> None:
        self.client = client
        self.table = table
        self.calls: List[tuple] = []
        self.payload: Dict[str, Any] = None

    def __getattr__(self, name):
        def _chain(*args, **kwargs):
            self.calls.append((name, args))
            return self

        return _chain

    def insert(self, payload):
        self.payload = dict(payload)
        self.calls.append(("insert", (payload,)))
        return self

    def update(self, payload):
        self.payload = dict(payload)
        self.calls.append(("update", (payload,)))
        return self

    def execute(self):
        self.client.executed.append(self)
        outcome = self.client.outcomes.pop(0) if self.client.outcomes else []
        if isinstance(outcome, Exception):
            raise outcome
        return _Result(outcome)


class _FakeClient:
    def __init__(self, outcomes=None) -> None:
        self.outcomes = list(outcomes or [])
        self.executed: List[_Query] = []

    def table(self, name: str) -> _Query:
        return _Query(self, name)


def _api_error(code: str, message: str = "error", details: str = None) -> APIError:
    return APIError({"code": code, "message": message, "details": details, "hint": None})


def _helper(client, with_checkout=True):
    optional = {"user_credits": {"polar_checkout_id"}, "payments": {"polar_checkout_id"}} if with_checkout else {}
    return DatabaseHelper(client, client, optional)


@pytest.mark.asyncio
async def test_insert_grant_retries_without_missing_optional_column():
    client = _FakeClient(
        [
            _api_error("PGRST204", "Could not find the 'polar_checkout_id' column of 'user_credits'"),
            [{"id": "grant-1", "user_id": "user-1"}],
        ]
    )
    helper = _helper(client)

    row = await helper.insert_grant({"user_id": "user-1", "polar_checkout_id": "chk_1"})

    assert row["id"] == "grant-1"
    assert client.executed[0].payload == {"user_id": "user-1", "polar_checkout_id": "chk_1"}
    assert client.executed[1].payload == {"user_id": "user-1"}
    assert helper.supports("user_credits", "polar_checkout_id") is False
    # 미지원으로 표시된 뒤에는 조회 없이 None
    assert await helper.find_grant_by_checkout("chk_1") is None
    assert len(client.executed) == 2


@pytest.mark.asyncio
async def test_unsupported_column_is_stripped_before_write():
    client = _FakeClient([[{"id": "grant-1"}]])
    helper = _helper(client, with_checkout=False)

    await helper.insert_grant({"user_id": "user-1", "polar_checkout_id": "chk_1"})

    assert client.executed[0].payload == {"user_id": "user-1"}


@pytest.mark.asyncio
async def test_repeated_missing_column_raises_schema_error():
    client = _FakeClient(
        [
            _api_error("42703", "column polar_checkout_id does not exist"),
            _api_error("42703", "column something_else does not exist"),
        ]
    )
    helper = _helper(client)

    with pytest.raises(SchemaColumnMissing) as error:
        await helper.insert_payment({"user_id": "user-1", "polar_checkout_id": "chk_1"})

    assert error.value.retryable is True


@pytest.mark.asyncio
async def test_unique_violation_on_grant_is_race_lost():
    client = _FakeClient([_api_error("23505", "duplicate key", "user_credits_provider_subscription_uniq")])

    with pytest.raises(RaceLostOnLink) as error:
        await _helper(client).insert_grant({"user_id": "user-1", "subscription_id": "sub_1"})

    assert error.value.constraint == "user_credits_provider_subscription_uniq"


@pytest.mark.asyncio
async def test_unique_violation_on_payment_means_already_recorded():
    client = _FakeClient([_api_error("23505", "duplicate key")])

    assert await _helper(client).insert_payment({"polar_checkout_id": "chk_1"}) is False


@pytest.mark.asyncio
async def test_update_grant_applies_expected_conditions():
    client = _FakeClient([[]])
    helper = _helper(client)

    result = await helper.update_grant(
        "grant-1",
        {"subscription_id": "sub_1"},
        {"subscription_id": None, "status": "active"},
    )

    assert result is None
    calls = client.executed[0].calls
    assert ("eq", ("id", "grant-1")) in calls
    assert ("is_", ("subscription_id", "null")) in calls
    assert ("eq", ("status", "active")) in calls
    assert "updated_at" in client.executed[0].payload


@pytest.mark.asyncio
async def test_read_failure_is_storage_error():
    client = _FakeClient([RuntimeError("connection reset")])

    with pytest.raises(StorageError):
        await _helper(client).find_grant_by_subscription("polar", "sub_1")


@pytest.mark.asyncio
async def test_recent_grant_query_excludes_current_subscription():
    client = _FakeClient([[{"id": "grant-3"}]])

    row = await _helper(client).find_recent_grant(
        "user-1",
        "polar",
        datetime(2025, 1, 20, tzinfo=timezone.utc),
        exclude_subscription_id="sub_1",
        subscription_only=True,
    )

    assert row == {"id": "grant-3"}
    calls = client.executed[0].calls
    assert ("or_", ("subscription_id.is.null,subscription_id.neq.sub_1",)) in calls
    assert ("neq", ("plan_type", "one_time")) in calls


@pytest.mark.asyncio
async def test_webhook_event_log_roundtrip_queries():
    client = _FakeClient([[{"id": 1}], [{"id": 7}], RuntimeError("down")])
    helper = _helper(client)

    assert await helper.record_webhook_event("polar", "evt_1", "processed", {"user_id": "user-1"}) is True
    assert await helper.has_processed_webhook_event("polar", "evt_1") is True
    # 중복 확인 실패는 처리 진행 (False)
    assert await helper.has_processed_webhook_event("polar", "evt_2") is False

    logged = client.executed[0].payload
    assert logged["event_type"] == "polar_webhook"
    assert logged["event_data"]["event_id"] == "evt_1"
    assert logged["user_id"] == "user-1"


@pytest.mark.asyncio
async def test_record_conversion_copies_first_touch():
    client = _FakeClient([[{"utm_source": "google", "utm_campaign": "spring"}], [{"id": 1}]])

    assert await _helper(client).record_conversion("user-1", 39.9, "usd") is True

    conversion = client.executed[1].payload
    assert conversion["attribution_type"] == "conversion"
    assert conversion["utm_source"] == "google"
    assert conversion["event_currency"] == "USD"
    assert conversion["event_value"] == 39.9
