from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from reefai.tank_setups import (  # noqa: E402
    SpeciesEntry,
    TankSetup,
    TankSetupNotFoundError,
    TankSetupStore,
    TankSetupStoreError,
    TankSetupValidationError,
    WaterParams,
    saved_to_tank_setup,
)


def _setup(**overrides) -> TankSetup:
    options = {
        "volume": 300,
        "lighting": "LED",
        "filtration": ["sump"],
        "fish": [SpeciesEntry(species="clownfish", quantity=2)],
        "corals": [SpeciesEntry(species="torch coral")],
        "has_protein_skimmer": True,
        "has_heater": True,
        "water_params": WaterParams(ph=8.1, salinity=1.026, temperature=77),
    }
    options.update(overrides)
    return TankSetup(**options)


def _raw_store(tmp_path: Path, user_id: str) -> dict:
    return json.loads((tmp_path / "tank_setups" / f"{user_id}.json").read_text(encoding="utf-8"))


def test_save_and_reload_preserves_the_editable_setup(tmp_path: Path):
    store = TankSetupStore(root=tmp_path)
    original = _setup()

    saved = store.save(user_id="user-1", setup=original, name="  Display tank  ")
    reloaded = store.get(user_id="user-1", setup_id=saved.id)

    assert reloaded.name == "Display tank"
    assert reloaded.fish == [{"species_id": "clownfish", "quantity": 2}]
    assert reloaded.corals == [{"species_id": "torch coral", "quantity": 1}]
    assert reloaded.analysis_result is None
    assert saved_to_tank_setup(reloaded) == original


def test_failed_fish_insert_removes_the_setup_row(tmp_path: Path):
    store = TankSetupStore(root=tmp_path)
    setup = _setup(fish=[SpeciesEntry(species="clownfish"), SpeciesEntry(species="clownfish")])

    with pytest.raises(TankSetupValidationError, match="Failed to save fish: duplicate species"):
        store.save(user_id="user-1", setup=setup, name="Broken")

    raw = _raw_store(tmp_path, "user-1")
    assert raw["tank_setups"] == []
    assert raw["tank_fish"] == []
    assert store.list_setups(user_id="user-1") == []


def test_failed_coral_insert_also_removes_inserted_fish(tmp_path: Path):
    store = TankSetupStore(root=tmp_path)
    setup = _setup(corals=[SpeciesEntry(species="torch coral", quantity=0)])

    with pytest.raises(TankSetupValidationError, match="Failed to save corals"):
        store.save(user_id="user-1", setup=setup, name="Broken")

    raw = _raw_store(tmp_path, "user-1")
    assert raw["tank_setups"] == []
    assert raw["tank_fish"] == []
    assert raw["tank_corals"] == []


def test_blank_name_is_rejected(tmp_path: Path):
    with pytest.raises(TankSetupValidationError, match="name is required"):
        TankSetupStore(root=tmp_path).save(user_id="user-1", setup=_setup(), name="   ")


def test_setups_are_scoped_per_user_and_listed_newest_first(tmp_path: Path):
    store = TankSetupStore(root=tmp_path)
    first = store.save(user_id="user-1", setup=_setup(), name="First")
    second = store.save(user_id="user-1", setup=_setup(), name="Second")
    store.save(user_id="user-2", setup=_setup(), name="Other")

    assert [item.id for item in store.list_setups(user_id="user-1")] == [second.id, first.id]
    with pytest.raises(TankSetupNotFoundError):
        store.get(user_id="user-2", setup_id=first.id)


def test_update_replaces_livestock_and_records_analysis(tmp_path: Path):
    store = TankSetupStore(root=tmp_path)
    saved = store.save(user_id="user-1", setup=_setup(), name="Display")

    updated = store.update(
        user_id="user-1",
        setup_id=saved.id,
        setup=_setup(fish=[SpeciesEntry(species="yellow tang")], corals=[]),
        name="Display v2",
        analysis={"score": 81, "summary": "Equipment: Fine.", "breakdown": {"equipment": "Fine."}},
    )

    assert updated.name == "Display v2"
    assert updated.fish == [{"species_id": "yellow tang", "quantity": 1}]
    assert updated.corals == []
    assert updated.analysis_result == {
        "score": 81,
        "summary": "Equipment: Fine.",
        "breakdown": {"equipment": "Fine."},
    }


def test_invalid_update_leaves_existing_rows_untouched(tmp_path: Path):
    store = TankSetupStore(root=tmp_path)
    saved = store.save(user_id="user-1", setup=_setup(), name="Display")

    with pytest.raises(TankSetupValidationError, match="Failed to update fish"):
        store.update(
            user_id="user-1",
            setup_id=saved.id,
            setup=_setup(fish=[SpeciesEntry(species="")]),
            name="Display",
        )

    assert store.get(user_id="user-1", setup_id=saved.id).fish == [{"species_id": "clownfish", "quantity": 2}]


def test_delete_cascades_to_livestock_and_analyses(tmp_path: Path):
    store = TankSetupStore(root=tmp_path)
    saved = store.save(user_id="user-1", setup=_setup(), name="Display", analysis={"score": 70, "result": "Ok"})

    store.delete(user_id="user-1", setup_id=saved.id)

    raw = _raw_store(tmp_path, "user-1")
    assert raw == {"tank_setups": [], "tank_fish": [], "tank_corals": [], "analysis_results": []}
    with pytest.raises(TankSetupNotFoundError):
        store.delete(user_id="user-1", setup_id=saved.id)


def test_analysis_history_joins_setup_name_and_volume(tmp_path: Path):
    store = TankSetupStore(root=tmp_path)
    saved = store.save(user_id="user-1", setup=_setup(), name="Display")
    store.add_analysis(user_id="user-1", setup_id=saved.id, analysis={"score": 60, "result": "First"})
    store.add_analysis(
        user_id="user-1",
        setup_id=saved.id,
        analysis={"score": 75, "summary": "Second", "generalAssessment": "Better."},
    )

    history = store.list_analyses(user_id="user-1")

    assert [item["score"] for item in history] == [75, 60]
    assert history[0]["tank_setup_name"] == "Display"
    assert history[0]["setup_volume"] == 300
    assert history[0]["general_assessment"] == "Better."
    assert history[1]["summary"] == "First"
    assert len(store.list_analyses(user_id="user-1", limit=1)) == 1


def test_tank_setup_payload_uses_camel_case_keys():
    setup = TankSetup.from_dict(
        {
            "volume": 150,
            "lighting": "Metal Halide",
            "hasWavemaker": True,
            "fish": [{"species": "mandarin dragonet"}],
            "waterParams": {"ph": 8.3},
        }
    )

    assert setup.has_wavemaker is True
    assert setup.fish == [SpeciesEntry(species="mandarin dragonet", quantity=1)]
    assert setup.to_dict()["waterParams"] == {"ph": 8.3}
    assert setup.to_dict()["hasProteinSkimmer"] is False


def test_failed_fish_write_removes_the_setup_row(tmp_path: Path, monkeypatch):
    store = TankSetupStore(root=tmp_path)
    original_write = store._write_store
    calls = {"count": 0}

    def flaky_write(user_id, payload):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OSError("disk full")
        original_write(user_id, payload)

    monkeypatch.setattr(store, "_write_store", flaky_write)

    with pytest.raises(TankSetupStoreError, match="Failed to save fish: disk full"):
        store.save(user_id="user-1", setup=_setup(), name="Display")

    assert store.list_setups(user_id="user-1") == []
    raw = _raw_store(tmp_path, "user-1")
    assert raw["tank_setups"] == []
    assert raw["tank_fish"] == []


def test_failed_setup_row_write_is_reported_as_store_error(tmp_path: Path, monkeypatch):
    store = TankSetupStore(root=tmp_path)

    def failing_write(user_id, payload):
        raise OSError("read-only file system")

    monkeypatch.setattr(store, "_write_store", failing_write)

    with pytest.raises(TankSetupStoreError, match="Failed to save tank setup"):
        store.save(user_id="user-1", setup=_setup(), name="Display")
