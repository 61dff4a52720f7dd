from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from reefai.analysis_prompts import (  # noqa: E402
    build_image_prompt,
    build_text_messages,
    describe_tank_setup,
    require_livestock,
)
from reefai.tank_setups import SpeciesEntry, TankSetup, TankSetupValidationError, WaterParams  # noqa: E402


def _full_setup() -> TankSetup:
    return TankSetup(
        volume=100,
        lighting="LED",
        filtration=["sump", "refugium"],
        fish=[SpeciesEntry(species="clownfish", quantity=2), SpeciesEntry(species="royal gramma")],
        corals=[SpeciesEntry(species="hammer coral")],
        has_protein_skimmer=True,
        has_heater=True,
        water_params=WaterParams(ph=8.2, salinity=1.025, temperature=78),
    )


def test_describe_tank_setup_includes_every_present_section():
    assert describe_tank_setup(_full_setup()) == (
        "26-gallon saltwater reef tank with LED lighting, sump and refugium filtration, "
        "equipped with protein skimmer, heater. "
        "Fish: 2x clownfish, 1x royal gramma. "
        "Corals: 1x hammer coral. "
        "Water parameters: pH 8.2, salinity 1.025, temperature 78°F"
    )


def test_describe_tank_setup_omits_absent_sections():
    setup = TankSetup(volume=200, lighting="T5", fish=[SpeciesEntry(species="yellow tang")])

    assert describe_tank_setup(setup) == "53-gallon saltwater reef tank with T5 lighting. Fish: 1x yellow tang"


def test_require_livestock_rejects_empty_tank():
    with pytest.raises(TankSetupValidationError, match="at least one fish or coral"):
        require_livestock(TankSetup(volume=100, lighting="LED"))

    require_livestock(TankSetup(volume=100, lighting="LED", corals=[SpeciesEntry(species="zoanthid")]))


def test_text_messages_carry_schema_and_description():
    messages = build_text_messages("75-gallon mixed reef")

    assert [message["role"] for message in messages] == ["system", "user"]
    assert '"generalAssessment"' in messages[0]["content"]
    assert "90-100: Excellent setup" in messages[0]["content"]
    assert messages[1]["content"] == "Analyze this aquarium setup with detailed breakdown:\n\n75-gallon mixed reef"


def test_image_prompt_uses_context_or_placeholder():
    assert "Context: No additional context provided" in build_image_prompt(None)
    assert "Context: No additional context provided" in build_image_prompt("   ")

    prompt = build_image_prompt("Frag tank under blue LEDs")
    assert "Context: Frag tank under blue LEDs" in prompt
    assert '"breakdown"' in prompt
