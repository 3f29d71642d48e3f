from __future__ import annotations

import pytest

from pnp.core.errors import AuthRejectedError
from pnp.services.auth_cache import BadAuthCache, DecisionCache
from pnp.services.hooks.auth import HookAuthenticator, StaticTokenVerifier, parse_bearer_token
from pnp.services.telemetry import counter_value


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _CountingVerifier:
    def __init__(self, valid: str) -> None:
        self.valid = valid
        self.calls = 0

    async def verify(self, token: str) -> bool:
        self.calls += 1
        return token == self.valid


def _authenticator(verifier: _CountingVerifier, clock: _Clock) -> HookAuthenticator:
    return HookAuthenticator(
        verifier=verifier,
        bad_auth=BadAuthCache(ttl_s=30, time_source=clock),
        decisions=DecisionCache(time_source=clock),
        decision_ttl_s=300,
    )


def test_bad_auth_entries_expire_after_ttl() -> None:
    clock = _Clock()
    cache = BadAuthCache(ttl_s=30, time_source=clock)
    cache.add_bad_auth("nope")
    assert cache.is_bad_auth("nope")
    clock.now += 29.9
    assert cache.is_bad_auth("nope")
    clock.now += 0.2
    assert not cache.is_bad_auth("nope")
    # Expired entries are dropped on lookup.
    assert len(cache) == 0


def test_empty_token_is_never_cached() -> None:
    cache = BadAuthCache(ttl_s=30)
    cache.add_bad_auth("")
    assert not cache.is_bad_auth("")
    assert len(cache) == 0


def test_decision_cache_expiry() -> None:
    clock = _Clock()
    cache = DecisionCache(time_source=clock)
    cache.put("tok", permitted=True, ttl_s=10)
    assert cache.get("tok").permitted
    clock.now += 10
    assert cache.get("tok") is None


@pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Bearer a b"])
def test_parse_bearer_token_rejects_malformed_headers(header: str | None) -> None:
    with pytest.raises(AuthRejectedError):
        parse_bearer_token(header)


@pytest.mark.asyncio
async def test_valid_token_is_verified_once_then_cached() -> None:
    verifier = _CountingVerifier("secret")
    authenticator = _authenticator(verifier, _Clock())
    await authenticator.authenticate("Bearer secret")
    await authenticator.authenticate("Bearer secret")
    assert verifier.calls == 1


@pytest.mark.asyncio
async def test_bad_token_is_rejected_from_cache_without_reverification() -> None:
    clock = _Clock()
    verifier = _CountingVerifier("secret")
    authenticator = _authenticator(verifier, clock)
    with pytest.raises(AuthRejectedError):
        await authenticator.authenticate("Bearer wrong")
    with pytest.raises(AuthRejectedError):
        await authenticator.authenticate("Bearer wrong")
    assert verifier.calls == 1
    assert counter_value("hooks_auth_rejected_total") == 1
    assert counter_value("hooks_auth_rejected_cached_total") == 1

    # After the negative entry expires the verifier is consulted again.
    clock.now += 31
    with pytest.raises(AuthRejectedError):
        await authenticator.authenticate("Bearer wrong")
    assert verifier.calls == 2


@pytest.mark.asyncio
async def test_unconfigured_shared_secret_rejects_everything() -> None:
    assert not await StaticTokenVerifier("").verify("anything")
    assert await StaticTokenVerifier("s3cret").verify("s3cret")
