from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

logger = logging.getLogger(__name__)

DEFAULT_SCORE = 50
RAW_TEXT_LIMIT = 960
GENERAL_ASSESSMENT_EXCERPT = 300
UNSTRUCTURED_SUMMARY = "Unable to analyze setup properly."
EMPTY_RESPONSE_SUMMARY = "Analysis unavailable."

# (breakdown key, summary label)
BREAKDOWN_FIELDS = (
    ("equipment", "Equipment"),
    ("waterParams", "Water Parameters"),
    ("livestock", "Livestock"),
    ("recommendations", "Recommendations"),
)
BREAKDOWN_KEYS = tuple(key for key, _ in BREAKDOWN_FIELDS)


@dataclass
class AnalysisPayload:
    score: int
    breakdown: dict[str, str] = field(default_factory=dict)
    summary: str = ""
    general_assessment: str | None = None
    interpreter: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "score": self.score,
            "breakdown": dict(self.breakdown),
            "summary": self.summary,
            "result": self.summary,
        }
        if self.general_assessment:
            payload["generalAssessment"] = self.general_assessment
        return payload


class ResponseInterpreter(Protocol):
    name: str

    def interpret(self, raw_text: str) -> AnalysisPayload | None:
        ...


class JsonResponseInterpreter:
    """Reads the structured JSON schema the prompts ask for."""

    name = "json"

    def interpret(self, raw_text: str) -> AnalysisPayload | None:
        parsed = _extract_json_object(raw_text)
        if parsed is None:
            return None

        breakdown = clean_breakdown(parsed.get("breakdown"))
        general_assessment = parsed.get("generalAssessment")
        if not isinstance(general_assessment, str) or not general_assessment.strip():
            general_assessment = None

        return AnalysisPayload(
            score=coerce_score(parsed.get("score")),
            breakdown=breakdown,
            summary=format_summary(breakdown) or UNSTRUCTURED_SUMMARY,
            general_assessment=general_assessment.strip() if general_assessment else None,
            interpreter=self.name,
        )


class RegexResponseInterpreter:
    """
    Pulls a score and keyword-anchored sentences out of prose.

    Declines when neither a score nor any breakdown sentence is found.
    """

    name = "regex"

    SCORE_PATTERN = re.compile(r"score[:\s]*(\d+)", re.IGNORECASE)
    SECTION_PATTERNS = (
        ("equipment", re.compile(r"equipment[^.]*\.", re.IGNORECASE)),
        ("waterParams", re.compile(r"water[^.]*\.", re.IGNORECASE)),
        ("livestock", re.compile(r"(?:fish|coral|livestock)[^.]*\.", re.IGNORECASE)),
        ("recommendations", re.compile(r"recommend[^.]*\.", re.IGNORECASE)),
    )

    def interpret(self, raw_text: str) -> AnalysisPayload | None:
        text = raw_text.strip() if isinstance(raw_text, str) else ""
        if not text:
            return None

        score_match = self.SCORE_PATTERN.search(text)
        breakdown: dict[str, str] = {}
        for key, pattern in self.SECTION_PATTERNS:
            match = pattern.search(text)
            if match:
                breakdown[key] = match.group(0).strip()

        if score_match is None and not breakdown:
            return None

        excerpt = text[:GENERAL_ASSESSMENT_EXCERPT]
        if len(text) > GENERAL_ASSESSMENT_EXCERPT:
            excerpt = f"{excerpt}..."

        return AnalysisPayload(
            score=coerce_score(score_match.group(1) if score_match else None),
            breakdown=breakdown,
            summary=format_summary(breakdown) or text[:RAW_TEXT_LIMIT],
            general_assessment=excerpt,
            interpreter=self.name,
        )


class RawTextInterpreter:
    """Last resort: keeps the first 960 characters as the summary."""

    name = "raw"

    def interpret(self, raw_text: str) -> AnalysisPayload | None:
        text = raw_text if isinstance(raw_text, str) else ""
        return AnalysisPayload(
            score=DEFAULT_SCORE,
            breakdown={},
            summary=text[:RAW_TEXT_LIMIT] or EMPTY_RESPONSE_SUMMARY,
            interpreter=self.name,
        )


TEXT_INTERPRETERS: tuple[ResponseInterpreter, ...] = (
    JsonResponseInterpreter(),
    RawTextInterpreter(),
)
IMAGE_INTERPRETERS: tuple[ResponseInterpreter, ...] = (
    JsonResponseInterpreter(),
    RegexResponseInterpreter(),
    RawTextInterpreter(),
)


def normalize_analysis(
    raw_text: str,
    interpreters: Sequence[ResponseInterpreter] = TEXT_INTERPRETERS,
) -> AnalysisPayload:
    for interpreter in interpreters:
        payload = interpreter.interpret(raw_text)
        if payload is None:
            continue
        if interpreter.name != JsonResponseInterpreter.name:
            logger.warning("AI response parsing failed, using %s fallback", interpreter.name)
        return payload
    return RawTextInterpreter().interpret(raw_text)


def format_summary(breakdown: dict[str, str]) -> str:
    lines = [f"{label}: {breakdown[key]}" for key, label in BREAKDOWN_FIELDS if breakdown.get(key)]
    return "\n\n".join(lines)


def clean_breakdown(raw_breakdown: Any) -> dict[str, str]:
    if not isinstance(raw_breakdown, dict):
        return {}
    cleaned: dict[str, str] = {}
    for key in BREAKDOWN_KEYS:
        value = raw_breakdown.get(key)
        if isinstance(value, str) and value.strip():
            cleaned[key] = value.strip()
    return cleaned


def coerce_score(raw_value: Any) -> int:
    if isinstance(raw_value, bool) or raw_value is None:
        return DEFAULT_SCORE
    try:
        score = int(round(float(raw_value)))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_SCORE
    if score == 0:
        return DEFAULT_SCORE
    return max(0, min(100, score))


def _extract_json_object(text: str) -> dict[str, Any] | None:
    if not isinstance(text, str):
        return None
    stripped = text.strip()
    if not stripped:
        return None

    try:
        payload = json.loads(stripped)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        return payload

    fenced_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", stripped, flags=re.DOTALL | re.IGNORECASE)
    if fenced_match:
        try:
            payload = json.loads(fenced_match.group(1))
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            return payload

    # Prose around a JSON object: decode from each opening brace.
    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", stripped):
        try:
            payload, _ = decoder.raw_decode(stripped[match.start() :])
        except ValueError:
            continue
        if isinstance(payload, dict) and ("score" in payload or "breakdown" in payload):
            return payload
    return None
