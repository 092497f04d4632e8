"""Tests for roomcall.identity: anonymous client ids."""

import pytest

from roomcall.identity import AnonymousIdentity, IdentityProvider, SharedTokenIdentity


class FakeRequest:
    def __init__(self, **params):
        self.query_params = params


class TestAnonymousIdentity:
    @pytest.mark.asyncio
    async def test_mints_id(self):
        result = await AnonymousIdentity().authenticate(FakeRequest())
        assert result.authenticated
        assert len(result.user_id) == 32

    @pytest.mark.asyncio
    async def test_reuses_presented_id(self):
        result = await AnonymousIdentity().authenticate_ws(FakeRequest(uid="alice-01"))
        assert result.user_id == "alice-01"

    @pytest.mark.asyncio
    async def test_rejects_malformed_id(self):
        result = await AnonymousIdentity().authenticate(FakeRequest(uid="../../etc"))
        assert result.user_id != "../../etc"

    @pytest.mark.asyncio
    async def test_ids_differ(self):
        provider = AnonymousIdentity()
        first = await provider.authenticate(FakeRequest())
        second = await provider.authenticate(FakeRequest())
        assert first.user_id != second.user_id


class TestSharedTokenIdentity:
    @pytest.mark.asyncio
    async def test_missing_token(self):
        result = await SharedTokenIdentity("s3cret").authenticate_ws(FakeRequest())
        assert not result.authenticated
        assert result.user_id is None

    @pytest.mark.asyncio
    async def test_valid_token(self):
        result = await SharedTokenIdentity("s3cret").authenticate_ws(
            FakeRequest(token="s3cret", uid="alice-01"))
        assert result.authenticated
        assert result.user_id == "alice-01"
        assert result.provider == "token"

    def test_is_provider(self):
        assert issubclass(SharedTokenIdentity, IdentityProvider)
