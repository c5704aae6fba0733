"""AuthService Bearer 토큰 검증 테스트"""
from types import SimpleNamespace

import pytest
from fastapi.security import HTTPAuthorizationCredentials

from core.responses import AuthenticationException
from services.auth_service import AuthService


class StubAuth:
    def __init__(self, user=None, error=None):
        self.user = user
        self.error = error
        self.tokens = []

    def get_user(self, token):
        self.tokens.append(token)
        if self.error:
            raise self.error
        return SimpleNamespace(user=self.user)


def _service(auth: StubAuth) -> AuthService:
    return AuthService(SimpleNamespace(auth=auth))


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.mark.asyncio
async def test_valid_token_returns_user():
    auth = StubAuth(user=SimpleNamespace(id="U1", email="u1@example.com"))

    user = await _service(auth).verify_bearer(_bearer("token-1"))

    assert user.id == "U1"
    assert user.email == "u1@example.com"
    assert auth.tokens == ["token-1"]


@pytest.mark.asyncio
@pytest.mark.parametrize("credentials", [None, HTTPAuthorizationCredentials(scheme="Bearer", credentials=" ")])
async def test_missing_token_fails_without_lookup(credentials):
    auth = StubAuth(user=SimpleNamespace(id="U1"))

    with pytest.raises(AuthenticationException):
        await _service(auth).verify_bearer(credentials)

    assert auth.tokens == []


@pytest.mark.asyncio
async def test_rejected_token_fails():
    with pytest.raises(AuthenticationException):
        await _service(StubAuth(error=RuntimeError("invalid JWT"))).verify_bearer(_bearer("bad"))


@pytest.mark.asyncio
async def test_unknown_user_fails():
    with pytest.raises(AuthenticationException):
        await _service(StubAuth(user=None)).verify_bearer(_bearer("orphan"))
