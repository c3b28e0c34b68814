from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import structlog
from fastapi import Request

from studio_ledger.economy.credits.errors import UnauthenticatedError
from studio_ledger.services.internal_auth import tokens_match

logger = structlog.get_logger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_EMAIL_HEADER = "X-User-Email"
GATEWAY_TOKEN_HEADER = "X-Gateway-Token"
MAX_USER_ID_LENGTH = 64


@dataclass(frozen=True, slots=True)
class SessionUser:
    id: str
    email: str | None = None


class SessionResolver(Protocol):
    async def resolve(self, request: Request) -> SessionUser: ...


class GatewaySessionResolver:
    """Trusts the user identity forwarded by the auth gateway.

    The gateway authenticates the browser session and forwards the user id in
    X-User-Id together with a shared X-Gateway-Token. With auth enforcement off,
    the token is not required and a configured demo user is used as fallback.
    """

    def __init__(
        self,
        *,
        gateway_token: str,
        auth_enforce: bool = True,
        demo_user_id: str = "",
    ) -> None:
        self._gateway_token = gateway_token
        self._auth_enforce = auth_enforce
        self._demo_user_id = demo_user_id.strip()

    async def resolve(self, request: Request) -> SessionUser:
        user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
        email = (request.headers.get(USER_EMAIL_HEADER) or "").strip() or None
        if user_id and len(user_id) <= MAX_USER_ID_LENGTH:
            trusted = tokens_match(
                expected=self._gateway_token,
                received=request.headers.get(GATEWAY_TOKEN_HEADER),
            )
            if trusted or not self._auth_enforce:
                return SessionUser(id=user_id, email=email)
            logger.warning("session_gateway_token_rejected", user_id=user_id)

        if not self._auth_enforce and self._demo_user_id:
            return SessionUser(id=self._demo_user_id)

        raise UnauthenticatedError("No active session")
