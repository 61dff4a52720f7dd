from __future__ import annotations

from typing import Any

from .tank_setups import TankSetup, TankSetupValidationError

LITERS_TO_GALLONS = 0.264172
BREAKDOWN_CHAR_LIMIT = 240
GENERAL_ASSESSMENT_CHAR_LIMIT = 560

SCORING_RUBRIC = (
    "Scoring criteria (1-100):\n"
    "- 90-100: Excellent setup, minimal improvements needed\n"
    "- 80-89: Very good setup, minor tweaks recommended\n"
    "- 70-79: Good setup, some improvements beneficial\n"
    "- 60-69: Decent setup, several areas need attention\n"
    "- 50-59: Basic setup, major improvements needed\n"
    "- Below 50: Poor setup, significant changes required"
)

RESPONSE_SCHEMA = (
    "{\n"
    '  "score": [number between 1-100],\n'
    f'  "generalAssessment": "[concise overall assessment, max {GENERAL_ASSESSMENT_CHAR_LIMIT} characters]",\n'
    '  "breakdown": {\n'
    f'    "equipment": "[equipment assessment, max {BREAKDOWN_CHAR_LIMIT} chars]",\n'
    f'    "waterParams": "[water parameters assessment, max {BREAKDOWN_CHAR_LIMIT} chars]",\n'
    f'    "livestock": "[fish/coral compatibility assessment, max {BREAKDOWN_CHAR_LIMIT} chars]",\n'
    f'    "recommendations": "[specific actionable recommendations, max {BREAKDOWN_CHAR_LIMIT} chars]"\n'
    "  }\n"
    "}"
)

TEXT_SYSTEM_PROMPT = (
    "You are an expert marine biologist and aquarium specialist.\n\n"
    "IMPORTANT: You must respond with EXACTLY this JSON format:\n"
    f"{RESPONSE_SCHEMA}\n\n"
    f"{SCORING_RUBRIC}\n\n"
    f"The generalAssessment should be a concise overview of the tank setup in {GENERAL_ASSESSMENT_CHAR_LIMIT} "
    "characters or less, discussing overall health, potential, challenges, and key recommendations. "
    f"Each breakdown section must be under {BREAKDOWN_CHAR_LIMIT} characters for quick reference."
)

IMAGE_FOCUS_AREAS = (
    "equipment visible in the photo (lighting, pumps, skimmer, heater, filtration)",
    "water clarity and any visible algae, detritus or cloudiness",
    "livestock condition: coloration, polyp extension, fish behavior and stocking density",
    "aquascaping: rockwork stability, open swimming space and coral placement",
)


def describe_tank_setup(setup: TankSetup) -> str:
    """Flatten a structured setup into the sentence the text prompt expects."""
    description = f"{_format_gallons(setup.volume)}-gallon saltwater reef tank with {setup.lighting} lighting"

    if setup.filtration:
        description += f", {' and '.join(setup.filtration)} filtration"

    equipment: list[str] = []
    if setup.has_protein_skimmer:
        equipment.append("protein skimmer")
    if setup.has_heater:
        equipment.append("heater")
    if setup.has_wavemaker:
        equipment.append("wavemaker")
    if equipment:
        description += f", equipped with {', '.join(equipment)}"

    if setup.fish:
        description += ". Fish: " + ", ".join(f"{entry.quantity}x {entry.species}" for entry in setup.fish)
    if setup.corals:
        description += ". Corals: " + ", ".join(f"{entry.quantity}x {entry.species}" for entry in setup.corals)

    water_params: list[str] = []
    params = setup.water_params
    if params.ph is not None:
        water_params.append(f"pH {_format_number(params.ph)}")
    if params.salinity is not None:
        water_params.append(f"salinity {_format_number(params.salinity)}")
    if params.temperature is not None:
        water_params.append(f"temperature {_format_number(params.temperature)}°F")
    if water_params:
        description += f". Water parameters: {', '.join(water_params)}"

    return description


def require_livestock(setup: TankSetup) -> None:
    if not setup.fish and not setup.corals:
        raise TankSetupValidationError("Please configure your tank setup with at least one fish or coral.")


def build_text_messages(description: str) -> list[dict[str, Any]]:
    return [
        {"role": "system", "content": TEXT_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"Analyze this aquarium setup with detailed breakdown:\n\n{description}",
        },
    ]


def build_image_prompt(context: str | None) -> str:
    context_line = (context or "").strip() or "No additional context provided"
    focus_text = "\n".join(f"- {item}" for item in IMAGE_FOCUS_AREAS)
    return (
        "You are a reef aquarium expert. Analyze this reef tank image in detail.\n"
        f"Context: {context_line}\n\n"
        "Base your assessment only on what can be inferred from the image and the context:\n"
        f"{focus_text}\n\n"
        "Respond ONLY with valid JSON in this exact format:\n"
        f"{RESPONSE_SCHEMA}\n\n"
        f"{SCORING_RUBRIC}\n\n"
        "Provide meaningful analysis, not placeholder text."
    )


def _format_gallons(liters: float) -> str:
    return str(int(round(float(liters) * LITERS_TO_GALLONS)))


def _format_number(value: float) -> str:
    return f"{value:g}"
