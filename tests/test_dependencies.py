"""
Tests for FastAPI dependencies.
"""

from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

from bookshelf.api.dependencies import (
    get_book_service,
    get_checkout_provider,
    get_entitlement_gate,
    get_webhook_dispatcher,
    require_api_key,
    verify_api_key,
)
from bookshelf.exceptions import AuthenticationError
from bookshelf.services.entitlements import EntitlementGate


class TestVerifyApiKey:
    """Tests for API key comparison."""

    def test_no_configured_key_disables_check(self):
        verify_api_key(None, None)
        verify_api_key("anything", "")

    def test_missing_key(self):
        with pytest.raises(AuthenticationError, match="X-API-Key header required"):
            verify_api_key(None, "secret")

    def test_wrong_key(self):
        with pytest.raises(AuthenticationError, match="Invalid API key"):
            verify_api_key("guess", "secret")

    def test_matching_key(self):
        verify_api_key("secret", "secret")


class TestRequireApiKey:
    """Tests for the require_api_key dependency."""

    @pytest.mark.asyncio
    async def test_rejection_is_401(self, monkeypatch):
        from bookshelf.config import settings

        monkeypatch.setattr(settings, "api_key", "secret")

        with pytest.raises(HTTPException) as exc_info:
            await require_api_key(x_api_key="wrong")

        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "ApiKey"}

    @pytest.mark.asyncio
    async def test_accepts_configured_key(self, monkeypatch):
        from bookshelf.config import settings

        monkeypatch.setattr(settings, "api_key", "secret")

        await require_api_key(x_api_key="secret")


class TestRequestScopedServices:
    """Tests for per-request service construction."""

    @pytest.mark.asyncio
    async def test_gate_per_call(self, store):
        """Each request gets its own gate, so snapshots never leak across requests."""
        first = await get_entitlement_gate(store)
        second = await get_entitlement_gate(store)

        assert isinstance(first, EntitlementGate)
        assert first is not second

    @pytest.mark.asyncio
    async def test_book_service_shares_store_and_gate(self, store, gate, checkout_provider):
        service = await get_book_service(store, gate, checkout_provider)

        assert service.store is store
        assert service.gate is gate
        assert service.checkout_provider is checkout_provider

    def test_app_state_lookups(self, checkout_provider, dispatcher):
        request = MagicMock()
        request.app.state.checkout_provider = checkout_provider
        request.app.state.webhook_dispatcher = dispatcher

        assert get_checkout_provider(request) is checkout_provider
        assert get_webhook_dispatcher(request) is dispatcher
