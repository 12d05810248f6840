"""결제 공급자/메일 API 클라이언트 단위 테스트"""
import asyncio
from typing import List

import httpx
import pytest

from services.notification_client import NotificationClient
from services.provider_api_client import PayPalBillingClient, PolarBillingClient, ProviderAPIError


class _DummyAsyncClient:
    """httpx.AsyncClient 대체용 간단한 더블"""

    def __init__(self, responses: List[httpx.Response], calls: List[dict]) -> None:
        self._responses = responses
        self._calls = calls

    async def __aenter__(self) -> "_DummyAsyncClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    def _next(self) -> httpx.Response:
        try:
            return self._responses.pop(0)
        except IndexError as exc:  # pragma: no cover - 테스트 보조 코드
            raise AssertionError("예상보다 많은 요청이 발생했습니다") from exc

    async def request(self, method: str, url: str, headers=None, json=None) -> httpx.Response:
        self._calls.append({"method": method, "url": url, "headers": headers, "json": json})
        return self._next()

    async def post(self, url: str, auth=None, data=None, headers=None) -> httpx.Response:
        self._calls.append({"method": "POST", "url": url, "auth": auth, "data": data})
        return self._next()


def _patch_async_client(monkeypatch, responses: List[httpx.Response]) -> List[dict]:
    """httpx.AsyncClient를 더블로 교체하고 호출 기록을 반환"""

    response_queue = list(responses)
    calls: List[dict] = []

    def _factory(*args, **kwargs):
        return _DummyAsyncClient(response_queue, calls)

    monkeypatch.setattr("services.provider_api_client.httpx.AsyncClient", _factory)
    return calls


def test_polar_cancel_schedules_cancel_at_period_end(monkeypatch):
    """Polar 해지는 cancel_at_period_end PATCH 로 요청한다"""

    calls = _patch_async_client(monkeypatch, [httpx.Response(200, json={"id": "sub_1", "cancel_at_period_end": True})])

    async def _run():
        client = PolarBillingClient(access_token="polar-token", base_url="https://polar.test/", backoff_factor=0)
        return await client.cancel_subscription("sub_1")

    result = asyncio.run(_run())

    assert result["cancel_at_period_end"] is True
    assert calls[0]["method"] == "PATCH"
    assert calls[0]["url"] == "https://polar.test/v1/subscriptions/sub_1"
    assert calls[0]["json"] == {"cancel_at_period_end": True}
    assert calls[0]["headers"]["Authorization"] == "Bearer polar-token"


def test_polar_retry_then_success(monkeypatch):
    """재시도 가능 오류 뒤 성공하면 최종 성공 결과를 반환한다"""

    _patch_async_client(
        monkeypatch,
        [
            httpx.Response(503, json={"detail": "unavailable"}),
            httpx.Response(200, json={"status": "ok"}),
        ],
    )

    async def _run():
        client = PolarBillingClient(access_token="polar-token", max_retries=1, backoff_factor=0)
        return await client.get_subscription("sub_1")

    assert asyncio.run(_run()) == {"status": "ok"}


def test_polar_error_code_mapping(monkeypatch):
    """구독을 찾지 못한 경우 매핑된 오류 메시지를 반환한다"""

    _patch_async_client(monkeypatch, [httpx.Response(404, json={"type": "ResourceNotFound", "detail": "Not found"})])

    async def _run():
        client = PolarBillingClient(access_token="polar-token", backoff_factor=0)
        await client.cancel_subscription("sub_404")

    with pytest.raises(ProviderAPIError) as excinfo:
        asyncio.run(_run())

    error = excinfo.value
    assert error.status_code == 404
    assert error.code == "ResourceNotFound"
    assert error.provider == "polar"
    assert str(error) == "Polar 구독 정보를 찾을 수 없습니다."


def test_polar_network_error_after_retries(monkeypatch):
    """네트워크 오류가 반복되면 network_error 코드로 실패한다"""

    class _FailingClient(_DummyAsyncClient):
        async def request(self, method, url, headers=None, json=None):
            raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(
        "services.provider_api_client.httpx.AsyncClient",
        lambda *args, **kwargs: _FailingClient([], []),
    )

    async def _run():
        client = PolarBillingClient(access_token="polar-token", max_retries=1, backoff_factor=0)
        await client.cancel_subscription("sub_1")

    with pytest.raises(ProviderAPIError) as excinfo:
        asyncio.run(_run())

    assert excinfo.value.code == "network_error"
    assert excinfo.value.status_code == 0


def test_missing_polar_token_error():
    """토큰이 없으면 명확한 ValueError를 발생시킨다"""

    with pytest.raises(ValueError) as excinfo:
        PolarBillingClient(access_token=" ")

    assert "Polar 액세스 토큰" in str(excinfo.value)


def test_paypal_cancel_fetches_token_then_posts_reason(monkeypatch):
    """PayPal 해지는 OAuth 토큰 발급 후 cancel 엔드포인트를 호출한다 (204)"""

    calls = _patch_async_client(
        monkeypatch,
        [
            httpx.Response(200, json={"access_token": "pp-token"}),
            httpx.Response(204),
        ],
    )

    async def _run():
        client = PayPalBillingClient("cid", "secret", "https://paypal.test", backoff_factor=0)
        return await client.cancel_subscription("I-SUB", "too expensive")

    result = asyncio.run(_run())

    assert result == {}
    assert calls[0]["url"] == "https://paypal.test/v1/oauth2/token"
    assert calls[0]["auth"] == ("cid", "secret")
    assert calls[0]["data"] == {"grant_type": "client_credentials"}
    assert calls[1]["url"] == "https://paypal.test/v1/billing/subscriptions/I-SUB/cancel"
    assert calls[1]["json"] == {"reason": "too expensive"}
    assert calls[1]["headers"]["Authorization"] == "Bearer pp-token"


def test_paypal_token_failure(monkeypatch):
    """토큰 발급 실패는 auth_failed 오류로 변환된다"""

    _patch_async_client(monkeypatch, [httpx.Response(401, json={"error": "invalid_client"})])

    async def _run():
        client = PayPalBillingClient("cid", "bad", "https://paypal.test", backoff_factor=0)
        await client.cancel_subscription("I-SUB")

    with pytest.raises(ProviderAPIError) as excinfo:
        asyncio.run(_run())

    assert excinfo.value.code == "auth_failed"
    assert excinfo.value.provider == "paypal"


def test_notification_send_posts_payload(monkeypatch):
    """메일 발송 API 에 템플릿 종류와 크레딧을 전달한다"""

    calls = _patch_async_client(monkeypatch, [httpx.Response(200, json={"ok": True})])

    async def _run():
        client = NotificationClient("https://mail.test/send", api_key="mail-key", backoff_factor=0)
        return await client.send("pro-purchase-confirmation", "a@example.com", "Jamie", 200)

    assert asyncio.run(_run()) is True
    assert calls[0]["url"] == "https://mail.test/send"
    assert calls[0]["json"] == {
        "type": "pro-purchase-confirmation",
        "email": "a@example.com",
        "creatorName": "Jamie",
        "credits": "200",
    }


def test_notification_failure_returns_false(monkeypatch):
    """메일 API 오류는 예외 없이 False 를 반환한다"""

    _patch_async_client(monkeypatch, [httpx.Response(500, json={"message": "down"})])

    async def _run():
        client = NotificationClient("https://mail.test/send", max_retries=0, backoff_factor=0)
        return await client.send("purchase-confirmation", "a@example.com", "Jamie", 30)

    assert asyncio.run(_run()) is False


def test_notification_without_endpoint_is_skipped():
    async def _run():
        return await NotificationClient(None).send("purchase-confirmation", "a@example.com", "Jamie", 30)

    assert asyncio.run(_run()) is False
