"""결제 공급자(Polar/PayPal) REST API 클라이언트"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx


logger = logging.getLogger(__name__)


class ProviderAPIError(RuntimeError):
    """결제 공급자 API 오류"""

    def __init__(
        self,
        message: str,
        status_code: int,
        payload: Optional[Dict[str, Any]] = None,
        *,
        code: Optional[str] = None,
        provider: str = "unknown",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}
        self.provider = provider
        self.code = code or self._extract_error_code()

    def _extract_error_code(self) -> Optional[str]:
        """응답 페이로드에서 오류 코드를 추출 (Polar: type/error, PayPal: name)"""

        if not isinstance(self.payload, dict):
            return None
        for key in ("type", "error", "name"):
            value = self.payload.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, dict):
                return value.get("code") or value.get("type")
        return None


class ProviderAPIClient:
    """재시도/백오프를 포함한 비동기 REST 클라이언트 기반 클래스"""

    PROVIDER = "unknown"
    ERROR_CODE_MESSAGES: Dict[str, str] = {}
    STATUS_MESSAGES: Dict[int, str] = {
        400: "결제 공급자 API 요청 파라미터가 올바르지 않습니다.",
        401: "결제 공급자 API 인증에 실패했습니다.",
        403: "결제 공급자 API 접근 권한이 없습니다.",
        404: "요청한 구독 정보를 찾지 못했습니다.",
        409: "구독 상태 충돌이 발생했습니다.",
        422: "결제 공급자가 요청을 처리할 수 없습니다.",
        429: "결제 공급자 API 호출이 제한되었습니다. 잠시 후 다시 시도하세요.",
        500: "결제 공급자 API 서버 오류가 발생했습니다.",
        503: "결제 공급자 API 서비스가 일시적으로 불가합니다.",
    }

    RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        *,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.backoff_factor = max(0.0, float(backoff_factor))

    async def _auth_headers(self) -> Dict[str, str]:
        raise NotImplementedError

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            **(await self._auth_headers()),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        for attempt in range(self.max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=headers, json=json)
            except httpx.RequestError as exc:
                logger.warning(
                    "[%s] API request network error: %s %s attempt=%s error=%s",
                    self.PROVIDER.upper(),
                    method,
                    path,
                    attempt + 1,
                    exc,
                )

                if attempt == self.max_retries:
                    raise ProviderAPIError(
                        "결제 공급자 API 네트워크 오류가 발생했습니다.",
                        status_code=0,
                        payload={"error": {"message": str(exc)}},
                        code="network_error",
                        provider=self.PROVIDER,
                    ) from exc

                await self._sleep_backoff(attempt)
                continue

            if response.status_code >= 400:
                payload = self._safe_json(response)
                message, code = self._resolve_error_message(payload, response.status_code)

                error = ProviderAPIError(message, response.status_code, payload, code=code, provider=self.PROVIDER)

                if self._is_retryable_status(response.status_code) and attempt < self.max_retries:
                    logger.warning(
                        "[%s] API request retry: %s %s status=%s code=%s attempt=%s",
                        self.PROVIDER.upper(),
                        method,
                        path,
                        response.status_code,
                        error.code,
                        attempt + 1,
                    )
                    await self._sleep_backoff(attempt)
                    continue

                logger.error(
                    "[%s] API request failed: %s %s status=%s code=%s payload=%s",
                    self.PROVIDER.upper(),
                    method,
                    path,
                    response.status_code,
                    error.code,
                    payload,
                )
                raise error

            if response.status_code == 204 or not response.content:
                return {}

            try:
                return response.json()
            except ValueError as exc:
                logger.error("[%s] API 응답 파싱 실패: %s", self.PROVIDER.upper(), exc)
                raise ProviderAPIError(
                    "결제 공급자 API 응답을 파싱하지 못했습니다",
                    response.status_code,
                    payload={"error": {"message": str(exc)}},
                    code="parse_error",
                    provider=self.PROVIDER,
                ) from exc

        # 이 지점에 도달했다면 모든 재시도가 실패한 것
        raise ProviderAPIError("결제 공급자 API 요청이 반복적으로 실패했습니다.", status_code=0, provider=self.PROVIDER)

    async def _sleep_backoff(self, attempt: int) -> None:
        """재시도 전 지수 백오프 딜레이"""

        delay = self.backoff_factor * (2**attempt)
        if delay > 0:
            await asyncio.sleep(delay)

    def _is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.RETRYABLE_STATUS

    def _resolve_error_message(self, payload: Dict[str, Any], status_code: int) -> tuple[str, Optional[str]]:
        """오류 응답을 기반으로 메시지와 코드 결정"""

        code = None
        message = None
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                code = error.get("code") or error.get("type")
                message = error.get("message")
            else:
                code = payload.get("type") or payload.get("name") or (error if isinstance(error, str) else None)
                message = payload.get("detail") or payload.get("message")

        if code and code in self.ERROR_CODE_MESSAGES:
            return self.ERROR_CODE_MESSAGES[code], code
        if isinstance(message, str) and message.strip():
            return message, code

        status_message = self.STATUS_MESSAGES.get(status_code)
        if status_message:
            return status_message, code

        return "결제 공급자 API 요청에 실패했습니다", code

    @staticmethod
    def _safe_json(response: httpx.Response) -> Dict[str, Any]:
        """JSON 파싱 실패 시 안전하게 fallback"""

        try:
            payload = response.json()
            return payload if isinstance(payload, dict) else {"data": payload}
        except ValueError:
            return {"error": {"message": response.text}}


class PolarBillingClient(ProviderAPIClient):
    """Polar API 클라이언트"""

    PROVIDER = "polar"
    ERROR_CODE_MESSAGES = {
        "ResourceNotFound": "Polar 구독 정보를 찾을 수 없습니다.",
        "AlreadyCanceledSubscription": "이미 해지된 구독입니다.",
        "Unauthorized": "Polar API 토큰이 올바르지 않습니다.",
        "NotPermitted": "Polar API 권한이 거부되었습니다.",
    }

    def __init__(self, access_token: str, base_url: str = "https://api.polar.sh", **kwargs) -> None:
        if not access_token or not access_token.strip():
            raise ValueError("Polar 액세스 토큰이 설정되지 않았습니다.")
        super().__init__(base_url, **kwargs)
        self.access_token = access_token

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """기간 종료 시 해지 예약 (cancel_at_period_end) - revoked 가 아닌 canceled 웹훅 발생"""

        return await self._request(
            "PATCH",
            f"/v1/subscriptions/{subscription_id}",
            json={"cancel_at_period_end": True},
        )

    async def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """구독 세부 정보를 조회"""

        return await self._request("GET", f"/v1/subscriptions/{subscription_id}")


class PayPalBillingClient(ProviderAPIClient):
    """PayPal 구독 API 클라이언트 (OAuth client credentials)"""

    PROVIDER = "paypal"

    def __init__(self, client_id: str, client_secret: str, base_url: str, **kwargs) -> None:
        if not client_id or not client_secret:
            raise ValueError("PayPal 클라이언트 자격 증명이 설정되지 않았습니다.")
        super().__init__(base_url, **kwargs)
        self.client_id = client_id
        self.client_secret = client_secret

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._fetch_access_token()
        return {"Authorization": f"Bearer {token}", "Prefer": "return=representation"}

    async def _fetch_access_token(self) -> str:
        url = f"{self.base_url}/v1/oauth2/token"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    auth=(self.client_id, self.client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                )
        except httpx.RequestError as exc:
            raise ProviderAPIError(
                "PayPal 인증 서버에 연결하지 못했습니다.",
                status_code=0,
                code="network_error",
                provider=self.PROVIDER,
            ) from exc

        payload = self._safe_json(response)
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if response.status_code >= 400 or not token:
            logger.error("[PAYPAL] access token 발급 실패: status=%s payload=%s", response.status_code, payload)
            raise ProviderAPIError(
                "PayPal 인증에 실패했습니다.",
                response.status_code,
                payload,
                code="auth_failed",
                provider=self.PROVIDER,
            )
        return token

    async def cancel_subscription(self, subscription_id: str, reason: str = "User requested cancellation") -> Dict[str, Any]:
        """구독 해지 (성공 시 204)"""

        return await self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            json={"reason": reason},
        )
