from __future__ import annotations

from types import SimpleNamespace

import pytest

from studio_ledger.economy.credits.errors import UnauthenticatedError
from studio_ledger.services.session_auth import GatewaySessionResolver, SessionUser


def _request(headers: dict[str, str]) -> SimpleNamespace:
    return SimpleNamespace(headers=headers)


@pytest.mark.asyncio
async def test_resolves_user_forwarded_by_gateway() -> None:
    resolver = GatewaySessionResolver(gateway_token="gw-secret")

    user = await resolver.resolve(
        _request({"X-User-Id": "user-1", "X-User-Email": "a@studio.test", "X-Gateway-Token": "gw-secret"})
    )

    assert user == SessionUser(id="user-1", email="a@studio.test")


@pytest.mark.asyncio
async def test_rejects_missing_or_wrong_gateway_token() -> None:
    resolver = GatewaySessionResolver(gateway_token="gw-secret")

    with pytest.raises(UnauthenticatedError):
        await resolver.resolve(_request({"X-User-Id": "user-1", "X-Gateway-Token": "nope"}))
    with pytest.raises(UnauthenticatedError):
        await resolver.resolve(_request({"X-User-Id": "user-1"}))
    with pytest.raises(UnauthenticatedError):
        await resolver.resolve(_request({"X-Gateway-Token": "gw-secret"}))


@pytest.mark.asyncio
async def test_rejects_oversized_user_id() -> None:
    resolver = GatewaySessionResolver(gateway_token="gw-secret")

    with pytest.raises(UnauthenticatedError):
        await resolver.resolve(_request({"X-User-Id": "u" * 65, "X-Gateway-Token": "gw-secret"}))


@pytest.mark.asyncio
async def test_without_enforcement_falls_back_to_demo_user() -> None:
    resolver = GatewaySessionResolver(gateway_token="", auth_enforce=False, demo_user_id="demo")

    assert await resolver.resolve(_request({})) == SessionUser(id="demo")
    assert await resolver.resolve(_request({"X-User-Id": "user-9"})) == SessionUser(id="user-9")


@pytest.mark.asyncio
async def test_without_enforcement_and_demo_user_still_requires_identity() -> None:
    resolver = GatewaySessionResolver(gateway_token="", auth_enforce=False)

    with pytest.raises(UnauthenticatedError):
        await resolver.resolve(_request({}))
