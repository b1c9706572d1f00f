"""Tests for Supabase access token verification"""
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from fastapi import HTTPException
from supabase import AuthError

from cartsync.auth import AuthenticatedUser, verify_supabase_auth
from cartsync.errors import ERROR_CART_ACCESS_DENIED, ERROR_CART_UNAVAILABLE


@pytest.fixture
def supabase_auth(monkeypatch):
    """Supabase client whose auth.get_user is an AsyncMock"""
    client = Mock()
    client.auth.get_user = AsyncMock()
    monkeypatch.setattr("cartsync.auth.get_supabase", AsyncMock(return_value=client))
    return client.auth


class TestVerifySupabaseAuth:
    """Bearer token resolution"""

    @pytest.mark.asyncio
    async def test_valid_token(self, supabase_auth):
        supabase_auth.get_user.return_value = Mock(user=Mock(id="user-1", email="a@example.com"))

        user = await verify_supabase_auth("Bearer good.jwt")

        assert user == AuthenticatedUser(id="user-1", email="a@example.com")
        supabase_auth.get_user.assert_awaited_once_with("good.jwt")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic dXNlcjpwYXNz"])
    async def test_missing_or_malformed_header(self, supabase_auth, header):
        with pytest.raises(HTTPException) as exc_info:
            await verify_supabase_auth(header)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == ERROR_CART_ACCESS_DENIED
        supabase_auth.get_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_token(self, supabase_auth):
        supabase_auth.get_user.side_effect = AuthError("invalid JWT", None)

        with pytest.raises(HTTPException) as exc_info:
            await verify_supabase_auth("Bearer forged.jwt")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_token_without_user(self, supabase_auth):
        supabase_auth.get_user.return_value = Mock(user=None)

        with pytest.raises(HTTPException) as exc_info:
            await verify_supabase_auth("Bearer expired.jwt")

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == ERROR_CART_ACCESS_DENIED

    @pytest.mark.asyncio
    async def test_auth_backend_down(self, supabase_auth):
        supabase_auth.get_user.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(HTTPException) as exc_info:
            await verify_supabase_auth("Bearer good.jwt")

        assert exc_info.value.status_code == 503
        assert exc_info.value.detail == ERROR_CART_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_unconfigured_backend(self, monkeypatch):
        monkeypatch.setattr(
            "cartsync.auth.get_supabase",
            AsyncMock(side_effect=ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")),
        )

        with pytest.raises(HTTPException) as exc_info:
            await verify_supabase_auth("Bearer good.jwt")

        assert exc_info.value.status_code == 503
