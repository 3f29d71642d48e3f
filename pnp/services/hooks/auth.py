from __future__ import annotations

import hmac
import logging
from typing import Protocol

from pnp.core.config import Settings, get_settings
from pnp.core.errors import AuthRejectedError
from pnp.services.auth_cache import BadAuthCache, DecisionCache
from pnp.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Reasons recorded on cached decisions.
REASON_OK = 0
REASON_INVALID_TOKEN = 1


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> bool: ...


class StaticTokenVerifier:
    """Accepts exactly one configured shared secret."""

    def __init__(self, expected: str) -> None:
        self._expected = expected

    async def verify(self, token: str) -> bool:
        if not self._expected:
            logger.warning("SNOW_TOKEN is not configured; rejecting ServiceNow hook request")
            return False
        return hmac.compare_digest(token.encode("utf-8"), self._expected.encode("utf-8"))


def parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format for ServiceNow hooks.
    if not header_value:
        raise AuthRejectedError("Missing or invalid bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise AuthRejectedError("Missing or invalid bearer token")
    return parts[1]


class HookAuthenticator:
    def __init__(
        self,
        *,
        verifier: TokenVerifier,
        bad_auth: BadAuthCache,
        decisions: DecisionCache,
        decision_ttl_s: float,
    ) -> None:
        self._verifier = verifier
        self._bad_auth = bad_auth
        self._decisions = decisions
        self._decision_ttl_s = decision_ttl_s

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> HookAuthenticator:
        settings = settings or get_settings()
        return cls(
            verifier=StaticTokenVerifier(settings.snow_token),
            bad_auth=BadAuthCache(ttl_s=settings.auth_bad_token_ttl_s),
            decisions=DecisionCache(),
            decision_ttl_s=settings.auth_decision_ttl_s,
        )

    @property
    def bad_auth(self) -> BadAuthCache:
        return self._bad_auth

    async def authenticate(self, authorization: str | None) -> None:
        token = parse_bearer_token(authorization)
        if self._bad_auth.is_bad_auth(token):
            increment_counter("hooks_auth_rejected_cached_total")
            raise AuthRejectedError("Missing or invalid bearer token")
        cached = self._decisions.get(token)
        if cached is not None:
            if cached.permitted:
                return
            raise AuthRejectedError("Missing or invalid bearer token")
        if not await self._verifier.verify(token):
            self._bad_auth.add_bad_auth(token)
            increment_counter("hooks_auth_rejected_total")
            raise AuthRejectedError("Missing or invalid bearer token")
        self._decisions.put(token, permitted=True, ttl_s=self._decision_ttl_s, reason=REASON_OK)
