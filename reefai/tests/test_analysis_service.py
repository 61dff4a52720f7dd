from __future__ import annotations

import json
import random
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from reefai.analysis_providers import ChatProviderError, ChatProviderResult  # noqa: E402
from reefai.analysis_service import (  # noqa: E402
    FALLBACK_ERROR,
    MOCK_IMAGE_BREAKDOWN,
    MOCK_TEXT_ASSESSMENTS,
    MOCK_TEXT_BREAKDOWN,
    AnalysisError,
    AnalysisService,
)
from reefai.config import AnalysisMode  # noqa: E402
from reefai.tank_setups import SpeciesEntry, TankSetup, TankSetupValidationError  # noqa: E402


class FakeProvider:
    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.text_calls: list[list[dict]] = []
        self.vision_calls: list[dict] = []

    def complete_text(self, *, messages):
        self.text_calls.append(messages)
        if self.error is not None:
            raise self.error
        return ChatProviderResult(text=self.text, raw_response={}, model_used="fake", request_metadata={})

    def complete_vision(self, *, prompt, image_bytes, content_type):
        self.vision_calls.append({"prompt": prompt, "image_bytes": image_bytes, "content_type": content_type})
        if self.error is not None:
            raise self.error
        return ChatProviderResult(text=self.text, raw_response={}, model_used="fake", request_metadata={})


def _live(provider: FakeProvider) -> AnalysisService:
    return AnalysisService(mode=AnalysisMode.LIVE, provider=provider, rng=random.Random(7))


def test_mock_text_analysis_uses_canned_content():
    service = AnalysisService(mode=AnalysisMode.MOCK, rng=random.Random(1))

    for _ in range(20):
        result = service.analyze_description("90-gallon reef")
        assert 60 <= result["score"] <= 99
        assert result["breakdown"] == MOCK_TEXT_BREAKDOWN
        assert result["generalAssessment"] in MOCK_TEXT_ASSESSMENTS
        assert result["result"] == result["summary"]


def test_blank_description_is_rejected():
    service = AnalysisService(mode=AnalysisMode.MOCK)

    with pytest.raises(AnalysisError, match="tankDescription is required"):
        service.analyze_description("   ")


def test_live_mode_requires_a_provider():
    with pytest.raises(AnalysisError):
        AnalysisService(mode=AnalysisMode.LIVE)


def test_live_text_analysis_normalizes_provider_output():
    provider = FakeProvider(
        text=json.dumps({"score": 88, "breakdown": {"equipment": "Good skimmer."}, "generalAssessment": "Nice."})
    )

    result = _live(provider).analyze_description("40-gallon nano reef")

    assert result == {
        "score": 88,
        "breakdown": {"equipment": "Good skimmer."},
        "summary": "Equipment: Good skimmer.",
        "result": "Equipment: Good skimmer.",
        "generalAssessment": "Nice.",
    }
    assert provider.text_calls[0][1]["content"].endswith("40-gallon nano reef")


def test_live_text_analysis_returns_soft_fallback_on_provider_error():
    provider = FakeProvider(error=ChatProviderError("OpenAI API error (500): boom"))

    result = _live(provider).analyze_description("40-gallon nano reef")

    assert 50 <= result["score"] <= 79
    assert result["error"] == FALLBACK_ERROR
    assert set(result["breakdown"]) == {"equipment", "waterParams", "livestock", "recommendations"}
    assert result["summary"] == result["result"]


def test_live_text_analysis_keeps_raw_text_when_not_json():
    provider = FakeProvider(text="Looks like a lovely tank with a score of maybe 80.")

    result = _live(provider).analyze_description("reef")

    assert result["score"] == 50
    assert result["breakdown"] == {}
    assert result["summary"] == "Looks like a lovely tank with a score of maybe 80."


def test_analyze_setup_requires_livestock_before_calling_provider():
    provider = FakeProvider(text=json.dumps({"score": 70}))
    service = _live(provider)

    with pytest.raises(TankSetupValidationError):
        service.analyze_setup(TankSetup(volume=100, lighting="LED"))
    assert provider.text_calls == []

    service.analyze_setup(TankSetup(volume=100, lighting="LED", fish=[SpeciesEntry(species="clownfish")]))
    assert "Fish: 1x clownfish" in provider.text_calls[0][1]["content"]


def test_mock_image_analysis_marks_image_analyzed():
    service = AnalysisService(mode=AnalysisMode.MOCK, rng=random.Random(3))

    result = service.analyze_image(image_bytes=b"\x89PNG", content_type="image/png")

    assert result["imageAnalyzed"] is True
    assert result["breakdown"] == MOCK_IMAGE_BREAKDOWN
    assert 60 <= result["score"] <= 99


def test_live_image_analysis_passes_context_and_uses_regex_tier():
    provider = FakeProvider(text="Score: 66. The equipment is basic. I recommend a better light.")

    result = _live(provider).analyze_image(
        image_bytes=b"jpeg-bytes",
        content_type="image/jpeg",
        context="Nano cube",
    )

    assert result["score"] == 66
    assert result["imageAnalyzed"] is True
    assert result["breakdown"]["equipment"] == "equipment is basic."
    assert "Context: Nano cube" in provider.vision_calls[0]["prompt"]
    assert provider.vision_calls[0]["content_type"] == "image/jpeg"


def test_live_image_analysis_propagates_provider_errors():
    provider = FakeProvider(error=ChatProviderError("OpenAI API error (429): slow down"))

    with pytest.raises(ChatProviderError, match="429"):
        _live(provider).analyze_image(image_bytes=b"jpeg-bytes", content_type="image/jpeg")


def test_image_analysis_requires_bytes():
    service = AnalysisService(mode=AnalysisMode.MOCK)

    with pytest.raises(AnalysisError, match="No image file provided"):
        service.analyze_image(image_bytes=b"", content_type="image/jpeg")
