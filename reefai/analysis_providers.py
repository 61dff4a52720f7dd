from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import Settings

logger = logging.getLogger(__name__)


class ChatProviderError(RuntimeError):
    pass


@dataclass
class ChatProviderResult:
    text: str
    raw_response: Any
    model_used: str
    request_metadata: dict[str, Any]


class OpenAIChatProvider:
    """
    Single-shot chat completion client for OpenAI-compatible endpoints.

    One request per call; failures surface as ChatProviderError and are never retried.
    """

    route_id = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        text_model: str,
        vision_model: str,
        vision_max_tokens: int,
        timeout_seconds: float,
    ) -> None:
        self.api_key = api_key.strip()
        self.base_url = base_url.strip().rstrip("/")
        self.endpoint = self.base_url.removesuffix("/chat/completions") + "/chat/completions"
        self.text_model = text_model.strip()
        self.vision_model = vision_model.strip()
        self.vision_max_tokens = vision_max_tokens
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIChatProvider":
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            text_model=settings.text_model,
            vision_model=settings.vision_model,
            vision_max_tokens=settings.vision_max_tokens,
            timeout_seconds=settings.request_timeout_seconds,
        )

    def complete_text(self, *, messages: list[dict[str, Any]]) -> ChatProviderResult:
        if not messages:
            raise ChatProviderError("At least one message is required for text analysis.")
        return self._complete(
            model=self.text_model,
            request_payload={
                "model": self.text_model,
                "messages": messages,
            },
            image_count=0,
        )

    def complete_vision(
        self,
        *,
        prompt: str,
        image_bytes: bytes,
        content_type: str,
    ) -> ChatProviderResult:
        if not image_bytes:
            raise ChatProviderError("An image is required for vision analysis.")
        return self._complete(
            model=self.vision_model,
            request_payload={
                "model": self.vision_model,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {
                                "type": "image_url",
                                "image_url": {
                                    "url": to_data_url(image_bytes, content_type),
                                },
                            },
                        ],
                    }
                ],
                "max_tokens": self.vision_max_tokens,
            },
            image_count=1,
        )

    def _complete(
        self,
        *,
        model: str,
        request_payload: dict[str, Any],
        image_count: int,
    ) -> ChatProviderResult:
        if not self.api_key:
            raise ChatProviderError("OpenAI provider is not configured (missing OPENAI_API_KEY).")
        if not model:
            raise ChatProviderError("OpenAI provider is not configured (missing model).")
        if not self.base_url.startswith("http"):
            raise ChatProviderError("Invalid OpenAI base URL.")

        try:
            response = httpx.post(
                self.endpoint,
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "User-Agent": "ReefAI/1.0",
                },
                json=request_payload,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise ChatProviderError(f"HTTP request failed: {exc}") from exc

        if response.is_error:
            detail = self._error_message(response)
            logger.warning("OpenAI request failed with status %s: %s", response.status_code, detail)
            raise ChatProviderError(f"OpenAI API error ({response.status_code}): {detail}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ChatProviderError(f"OpenAI response was not valid JSON: {exc}") from exc

        return ChatProviderResult(
            text=self._first_choice_text(payload),
            raw_response=payload,
            model_used=model,
            request_metadata={
                "provider": self.route_id,
                "endpoint": self.endpoint,
                "model": model,
                "image_count": image_count,
            },
        )

    @staticmethod
    def _first_choice_text(payload: Any) -> str:
        try:
            message = payload["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ChatProviderError("OpenAI response has no completion message.") from exc
        if not isinstance(message, dict):
            raise ChatProviderError("OpenAI response has no completion message.")
        content = message.get("content")
        if content is None or isinstance(content, str):
            return content or ""
        if isinstance(content, list):
            # Multi-part content; only text parts carry the analysis.
            return "\n".join(
                part["text"]
                for part in content
                if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
            )
        raise ChatProviderError("OpenAI response did not include text content.")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error")
        except (ValueError, AttributeError):
            error = None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        return response.text.strip()[:300] or response.reason_phrase or "Unknown provider error"


def to_data_url(image_bytes: bytes, content_type: str) -> str:
    media_type = content_type.strip().lower() if isinstance(content_type, str) else ""
    if media_type == "image/jpg":
        media_type = "image/jpeg"
    if not media_type.startswith("image/"):
        media_type = "image/jpeg"
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{media_type};base64,{encoded}"
