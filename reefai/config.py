from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, TypeVar

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_DATA_DIR = BASE_DIR / "data"

Number = TypeVar("Number", int, float)


class AnalysisMode(str, Enum):
    MOCK = "mock"
    LIVE = "live"


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = ""
    use_mock_ai: bool = False
    openai_base_url: str = "https://api.openai.com/v1"
    text_model: str = "gpt-4o-mini"
    vision_model: str = "gpt-4o"
    vision_max_tokens: int = 1000
    request_timeout_seconds: float = 90.0
    data_dir: Path = DEFAULT_DATA_DIR
    auth_tokens: dict[str, str] = field(default_factory=dict)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @property
    def analysis_mode(self) -> AnalysisMode:
        if not self.openai_api_key.strip() or self.use_mock_ai:
            return AnalysisMode.MOCK
        return AnalysisMode.LIVE

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url.strip() and self.supabase_service_role_key.strip())

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir_raw = os.getenv("REEFAI_DATA_DIR", "").strip()
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            use_mock_ai=_env_flag(os.getenv("USE_MOCK_AI"), default=False),
            openai_base_url=os.getenv("REEFAI_OPENAI_BASE_URL", "https://api.openai.com/v1"),
            text_model=os.getenv("REEFAI_TEXT_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
            vision_model=os.getenv("REEFAI_VISION_MODEL", "gpt-4o").strip() or "gpt-4o",
            vision_max_tokens=_env_positive(os.getenv("REEFAI_VISION_MAX_TOKENS"), int, 1000),
            request_timeout_seconds=_env_positive(os.getenv("REEFAI_REQUEST_TIMEOUT_SECONDS"), float, 90.0),
            data_dir=Path(data_dir_raw) if data_dir_raw else DEFAULT_DATA_DIR,
            auth_tokens=_parse_token_map(os.getenv("REEFAI_AUTH_TOKENS")),
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
            cors_origins=_parse_csv(os.getenv("REEFAI_CORS_ORIGINS"), fallback=("*",)),
            log_level=os.getenv("REEFAI_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )


_ENV_BOOLEANS = {
    "1": True,
    "true": True,
    "yes": True,
    "on": True,
    "0": False,
    "false": False,
    "no": False,
    "off": False,
}


def _env_flag(raw_value: str | None, *, default: bool) -> bool:
    if raw_value is None:
        return default
    return _ENV_BOOLEANS.get(raw_value.strip().lower(), default)


def _env_positive(raw_value: str | None, cast: Callable[[str], Number], fallback: Number) -> Number:
    try:
        parsed = cast(raw_value) if raw_value is not None else fallback
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def _parse_csv(raw_value: str | None, *, fallback: tuple[str, ...]) -> tuple[str, ...]:
    if raw_value is None:
        return fallback
    items = tuple(item.strip() for item in raw_value.split(",") if item.strip())
    return items or fallback


def _parse_token_map(raw_value: str | None) -> dict[str, str]:
    # "token-a=user-1,token-b=user-2"
    tokens: dict[str, str] = {}
    if not raw_value:
        return tokens
    for entry in raw_value.split(","):
        token, sep, user_id = entry.partition("=")
        if not sep:
            continue
        token = token.strip()
        user_id = user_id.strip()
        if token and user_id:
            tokens[token] = user_id
    return tokens
