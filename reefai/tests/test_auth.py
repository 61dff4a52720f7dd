from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from reefai.auth import (  # noqa: E402
    AuthError,
    StaticTokenVerifier,
    SupabaseTokenVerifier,
    build_token_verifier,
    extract_bearer_token,
)
from reefai.config import Settings  # noqa: E402


class FakeSupabaseAuth:
    def __init__(self, users: dict[str, str]) -> None:
        self.users = users
        self.tokens: list[str] = []

    def get_user(self, token: str):
        self.tokens.append(token)
        if token == "explode":
            raise RuntimeError("JWT expired")
        user_id = self.users.get(token)
        return SimpleNamespace(user=SimpleNamespace(id=user_id) if user_id else None)


def _supabase(users: dict[str, str]) -> SupabaseTokenVerifier:
    client = SimpleNamespace(auth=FakeSupabaseAuth(users))
    return SupabaseTokenVerifier(url="https://example.supabase.co", service_role_key="service", client=client)


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer abc123", "abc123"),
        ("bearer   abc123  ", "abc123"),
        ("Bearer ", None),
        ("Basic abc123", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected


def test_static_verifier_maps_known_tokens():
    verifier = StaticTokenVerifier({"token-a": "user-a"})

    assert verifier.user_id_for("token-a") == "user-a"
    with pytest.raises(AuthError, match="Invalid token"):
        verifier.user_id_for("token-b")


def test_supabase_verifier_returns_user_id():
    verifier = _supabase({"jwt-1": "5b7c1f0e"})

    assert verifier.user_id_for("jwt-1") == "5b7c1f0e"
    assert verifier.client.auth.tokens == ["jwt-1"]


def test_supabase_verifier_rejects_unknown_and_failing_tokens():
    verifier = _supabase({})

    with pytest.raises(AuthError, match="Invalid token"):
        verifier.user_id_for("jwt-unknown")
    with pytest.raises(AuthError, match="Invalid token"):
        verifier.user_id_for("explode")


def test_build_token_verifier_uses_static_tokens_from_settings():
    verifier = build_token_verifier(Settings(auth_tokens={"dev-token": "dev-user"}))

    assert verifier.user_id_for("dev-token") == "dev-user"
    with pytest.raises(AuthError):
        verifier.user_id_for("other")


def test_unconfigured_verifier_rejects_every_token():
    verifier = build_token_verifier(Settings())

    with pytest.raises(AuthError):
        verifier.user_id_for("anything")
