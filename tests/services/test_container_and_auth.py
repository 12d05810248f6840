"""DI 컨테이너 자동 연결 및 인증 서비스 테스트"""
from types import SimpleNamespace
from typing import Optional

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from core.container import DIContainer
from core.interfaces import ICreditService, IDatabaseHelper
from services.auth_service import AuthService
from services.credit_service import CreditService
from services.provider_api_client import PayPalBillingClient, PolarBillingClient

from doubles import InMemoryStore


def test_register_service_wires_optional_provider_clients():
    container = DIContainer()
    store = InMemoryStore()
    polar = PolarBillingClient(access_token="polar-token")
    container.register_singleton(IDatabaseHelper, store)
    container.register_singleton(PolarBillingClient, polar)
    container.register_service(ICreditService, CreditService)

    service = container.get(ICreditService)

    assert service.db_helper is store
    assert service.polar_client is polar
    # 미등록 Optional 의존성은 None
    assert service.paypal_client is None
    assert container.get(ICreditService) is service


def test_unregistered_service_raises_value_error():
    container = DIContainer()
    with pytest.raises(ValueError):
        container.get(PayPalBillingClient)


def test_required_dependency_missing_raises():
    class NeedsDb:
        def __init__(self, db_helper: IDatabaseHelper, label: Optional[str] = "x"):
            self.db_helper = db_helper

    container = DIContainer()
    container.register_service(NeedsDb, NeedsDb)

    with pytest.raises(ValueError):
        container.get(NeedsDb)


def test_transient_factory_builds_new_instance_each_time():
    container = DIContainer()
    container.register_transient(InMemoryStore, InMemoryStore)

    assert container.get(InMemoryStore) is not container.get(InMemoryStore)
    container.reset()
    assert not container.is_registered(InMemoryStore)


class _FakeAuth:
    def __init__(self, user=None, error=None):
        self.user = user
        self.error = error

    def get_user(self, token):
        if self.error:
            raise self.error
        return SimpleNamespace(user=self.user)


def _credentials(token="jwt-token"):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.mark.asyncio
async def test_verify_auth_returns_supabase_user():
    user = SimpleNamespace(id="user-1")
    service = AuthService(SimpleNamespace(auth=_FakeAuth(user=user)), InMemoryStore())

    assert await service.verify_auth(_credentials()) is user


@pytest.mark.asyncio
async def test_verify_auth_rejects_invalid_token():
    service = AuthService(SimpleNamespace(auth=_FakeAuth(error=RuntimeError("jwt expired"))), InMemoryStore())

    with pytest.raises(HTTPException) as error:
        await service.verify_auth(_credentials())

    assert error.value.status_code == 401


@pytest.mark.asyncio
async def test_verify_auth_rejects_unknown_user():
    service = AuthService(SimpleNamespace(auth=_FakeAuth(user=None)), InMemoryStore())

    with pytest.raises(HTTPException):
        await service.verify_auth(_credentials())
