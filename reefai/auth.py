from __future__ import annotations

import logging
from typing import Any, Protocol

from supabase import create_client

from .config import Settings

logger = logging.getLogger(__name__)


class AuthError(RuntimeError):
    pass


class TokenVerifier(Protocol):
    def user_id_for(self, token: str) -> str:
        ...


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class StaticTokenVerifier:
    """Fixed token to user id map, for local development and tests."""

    def __init__(self, tokens: dict[str, str]) -> None:
        self.tokens = dict(tokens)

    def user_id_for(self, token: str) -> str:
        user_id = self.tokens.get(token)
        if not user_id:
            raise AuthError("Invalid token")
        return user_id


class SupabaseTokenVerifier:
    def __init__(self, *, url: str, service_role_key: str, client: Any = None) -> None:
        self.client = client if client is not None else create_client(url, service_role_key)

    def user_id_for(self, token: str) -> str:
        try:
            response = self.client.auth.get_user(token)
        except Exception as exc:
            logger.warning("Token validation error: %s", exc)
            raise AuthError("Invalid token") from exc
        user = getattr(response, "user", None)
        user_id = getattr(user, "id", None)
        if not user_id:
            raise AuthError("Invalid token")
        return str(user_id)


class ChainedTokenVerifier:
    def __init__(self, verifiers: list[TokenVerifier]) -> None:
        self.verifiers = list(verifiers)

    def user_id_for(self, token: str) -> str:
        last_error: AuthError | None = None
        for verifier in self.verifiers:
            try:
                return verifier.user_id_for(token)
            except AuthError as exc:
                last_error = exc
        raise last_error or AuthError("Authentication is not configured")


def build_token_verifier(settings: Settings) -> TokenVerifier:
    verifiers: list[TokenVerifier] = []
    if settings.auth_tokens:
        verifiers.append(StaticTokenVerifier(settings.auth_tokens))
    if settings.supabase_configured:
        verifiers.append(
            SupabaseTokenVerifier(
                url=settings.supabase_url,
                service_role_key=settings.supabase_service_role_key,
            )
        )
    if not verifiers:
        logger.warning("No token verifier configured; authenticated endpoints will reject every request.")
    return ChainedTokenVerifier(verifiers)
