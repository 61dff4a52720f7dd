from __future__ import annotations

import json
import logging
import random
from typing import Any, Protocol

from .analysis_normalizer import IMAGE_INTERPRETERS, TEXT_INTERPRETERS, normalize_analysis
from .analysis_prompts import build_image_prompt, build_text_messages, describe_tank_setup, require_livestock
from .analysis_providers import ChatProviderError, ChatProviderResult
from .config import AnalysisMode
from .tank_setups import TankSetup

logger = logging.getLogger(__name__)

MOCK_SCORE_RANGE = (60, 99)
FALLBACK_SCORE_RANGE = (50, 79)

MOCK_TEXT_BREAKDOWN = {
    "equipment": "Good filtration and lighting setup. Consider upgrading protein skimmer for better water quality.",
    "waterParams": "pH and salinity are within acceptable range. Monitor alkalinity and calcium levels regularly.",
    "livestock": "Current fish selection shows good compatibility. Avoid aggressive species in this setup.",
    "recommendations": "Add wave makers for better circulation. Consider gradual coral additions starting with hardy LPS species.",
}

MOCK_TEXT_ASSESSMENTS = (
    "Excellent reef setup with balanced livestock and proper equipment. Lighting supports coral growth, "
    "filtration maintains quality water. Fish compatibility is strong. Consider calcium reactor for long-term "
    "coral health. Bioload sustainable with expansion room. Regular maintenance ensures success.",
    "Solid fundamentals with improvement potential. Fish selection diverse, avoiding aggression. Lighting adequate "
    "for moderate corals, upgrade for SPS growth. Add flow pumps to eliminate dead spots. Stable biological "
    "filtration processing waste well. Consider backup heating. Match feeding to bioload.",
    "Thoughtful marine ecosystem design with balanced equipment. Livestock promotes natural behaviors and "
    "minimizes stress. Healthy biological processes with effective nutrient export. Consider a refugium for "
    "natural processing. Regular testing prevents parameter drift.",
)

MOCK_IMAGE_BREAKDOWN = {
    "equipment": "Good basic equipment setup visible. Consider upgrading lighting for coral growth.",
    "waterParams": "Water appears clear, suggesting good filtration. Monitor parameters regularly.",
    "livestock": "Fish appear healthy and active. Good variety without overcrowding.",
    "recommendations": "Consider adding more live rock for biological filtration and coral placement areas.",
}

MOCK_IMAGE_ASSESSMENT = (
    "This is a mock analysis of your tank image. Your setup shows good potential with room for improvement "
    "in lighting and flow patterns."
)

FALLBACK_BREAKDOWN = {
    "equipment": "Analysis temporarily unavailable. Basic setup detected.",
    "waterParams": "Unable to analyze water parameters at this time.",
    "livestock": "Livestock compatibility check unavailable.",
    "recommendations": "Please try again later or contact support.",
}
FALLBACK_SUMMARY = "Analysis service temporarily unavailable. This is a fallback response."
FALLBACK_ERROR = "Analysis temporarily unavailable"


class AnalysisError(RuntimeError):
    pass


class ChatProvider(Protocol):
    def complete_text(self, *, messages: list[dict[str, Any]]) -> ChatProviderResult:
        ...

    def complete_vision(self, *, prompt: str, image_bytes: bytes, content_type: str) -> ChatProviderResult:
        ...


class AnalysisService:
    """
    Runs one analysis per call: build the prompt, get raw model text (mock or
    live), then normalize it into the canonical response shape.
    """

    def __init__(
        self,
        *,
        mode: AnalysisMode,
        provider: ChatProvider | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if mode is AnalysisMode.LIVE and provider is None:
            raise AnalysisError("Live analysis mode requires a chat provider.")
        self.mode = mode
        self.provider = provider
        self.rng = rng or random.Random()

    def analyze_description(self, description: str) -> dict[str, Any]:
        clean_description = str(description or "").strip()
        if not clean_description:
            raise AnalysisError("tankDescription is required")

        if self.mode is AnalysisMode.MOCK:
            raw_text = self._mock_text_response()
        else:
            try:
                result = self.provider.complete_text(messages=build_text_messages(clean_description))
            except ChatProviderError as exc:
                logger.error("Text analysis failed, returning fallback response: %s", exc)
                return self._fallback_response()
            raw_text = result.text

        return normalize_analysis(raw_text, TEXT_INTERPRETERS).to_dict()

    def analyze_setup(self, setup: TankSetup) -> dict[str, Any]:
        require_livestock(setup)
        return self.analyze_description(describe_tank_setup(setup))

    def analyze_image(
        self,
        *,
        image_bytes: bytes,
        content_type: str,
        context: str | None = None,
    ) -> dict[str, Any]:
        if not image_bytes:
            raise AnalysisError("No image file provided")

        if self.mode is AnalysisMode.MOCK:
            raw_text = self._mock_image_response()
        else:
            result = self.provider.complete_vision(
                prompt=build_image_prompt(context),
                image_bytes=image_bytes,
                content_type=content_type,
            )
            raw_text = result.text

        payload = normalize_analysis(raw_text, IMAGE_INTERPRETERS).to_dict()
        payload["imageAnalyzed"] = True
        return payload

    def _mock_text_response(self) -> str:
        return json.dumps(
            {
                "score": self.rng.randint(*MOCK_SCORE_RANGE),
                "generalAssessment": self.rng.choice(MOCK_TEXT_ASSESSMENTS),
                "breakdown": MOCK_TEXT_BREAKDOWN,
            }
        )

    def _mock_image_response(self) -> str:
        return json.dumps(
            {
                "score": self.rng.randint(*MOCK_SCORE_RANGE),
                "generalAssessment": MOCK_IMAGE_ASSESSMENT,
                "breakdown": MOCK_IMAGE_BREAKDOWN,
            }
        )

    def _fallback_response(self) -> dict[str, Any]:
        return {
            "score": self.rng.randint(*FALLBACK_SCORE_RANGE),
            "breakdown": dict(FALLBACK_BREAKDOWN),
            "summary": FALLBACK_SUMMARY,
            "result": FALLBACK_SUMMARY,
            "error": FALLBACK_ERROR,
        }
