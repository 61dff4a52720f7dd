from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


class TankSetupStoreError(RuntimeError):
    pass


class TankSetupNotFoundError(TankSetupStoreError):
    pass


class TankSetupValidationError(TankSetupStoreError):
    pass


@dataclass
class SpeciesEntry:
    species: str
    quantity: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {"species": self.species, "quantity": self.quantity}


@dataclass
class WaterParams:
    ph: float | None = None
    salinity: float | None = None
    temperature: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.ph is not None:
            payload["ph"] = self.ph
        if self.salinity is not None:
            payload["salinity"] = self.salinity
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        return payload


@dataclass
class TankSetup:
    """A user-authored tank description. Volume is in liters, temperature in °F."""

    volume: float
    lighting: str
    filtration: list[str] = field(default_factory=list)
    fish: list[SpeciesEntry] = field(default_factory=list)
    corals: list[SpeciesEntry] = field(default_factory=list)
    has_protein_skimmer: bool = False
    has_heater: bool = False
    has_wavemaker: bool = False
    water_params: WaterParams = field(default_factory=WaterParams)

    def to_dict(self) -> dict[str, Any]:
        return {
            "volume": self.volume,
            "lighting": self.lighting,
            "filtration": list(self.filtration),
            "fish": [entry.to_dict() for entry in self.fish],
            "corals": [entry.to_dict() for entry in self.corals],
            "hasProteinSkimmer": self.has_protein_skimmer,
            "hasHeater": self.has_heater,
            "hasWavemaker": self.has_wavemaker,
            "waterParams": self.water_params.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TankSetup":
        water = payload.get("waterParams") or {}
        return cls(
            volume=payload["volume"],
            lighting=payload["lighting"],
            filtration=list(payload.get("filtration") or []),
            fish=[SpeciesEntry(species=item["species"], quantity=item.get("quantity", 1)) for item in payload.get("fish") or []],
            corals=[SpeciesEntry(species=item["species"], quantity=item.get("quantity", 1)) for item in payload.get("corals") or []],
            has_protein_skimmer=bool(payload.get("hasProteinSkimmer", False)),
            has_heater=bool(payload.get("hasHeater", False)),
            has_wavemaker=bool(payload.get("hasWavemaker", False)),
            water_params=WaterParams(
                ph=water.get("ph"),
                salinity=water.get("salinity"),
                temperature=water.get("temperature"),
            ),
        )


@dataclass
class SavedTankSetup:
    id: str
    name: str
    volume: float
    lighting: str
    filtration: list[str]
    has_protein_skimmer: bool
    has_heater: bool
    has_wavemaker: bool
    water_ph: float | None
    water_salinity: float | None
    water_temperature: float | None
    fish: list[dict[str, Any]]
    corals: list[dict[str, Any]]
    created_at: str
    updated_at: str
    analysis_result: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "volume": self.volume,
            "lighting": self.lighting,
            "filtration": list(self.filtration),
            "has_protein_skimmer": self.has_protein_skimmer,
            "has_heater": self.has_heater,
            "has_wavemaker": self.has_wavemaker,
            "water_ph": self.water_ph,
            "water_salinity": self.water_salinity,
            "water_temperature": self.water_temperature,
            "fish": [dict(item) for item in self.fish],
            "corals": [dict(item) for item in self.corals],
            "analysis_result": self.analysis_result,
            "setup": saved_to_tank_setup(self).to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def saved_to_tank_setup(saved: SavedTankSetup) -> TankSetup:
    """Convert a stored setup back into the editable form shape."""
    return TankSetup(
        volume=saved.volume,
        lighting=saved.lighting,
        filtration=list(saved.filtration),
        fish=[SpeciesEntry(species=item["species_id"], quantity=item["quantity"]) for item in saved.fish],
        corals=[SpeciesEntry(species=item["species_id"], quantity=item["quantity"]) for item in saved.corals],
        has_protein_skimmer=saved.has_protein_skimmer,
        has_heater=saved.has_heater,
        has_wavemaker=saved.has_wavemaker,
        water_params=WaterParams(
            ph=saved.water_ph,
            salinity=saved.water_salinity,
            temperature=saved.water_temperature,
        ),
    )


class TankSetupStore:
    """
    Persists tank setups per user as a JSON document with one list per table:
    tank_setups, tank_fish, tank_corals and analysis_results.

    Statements are applied one at a time; a failed junction insert removes the
    setup row that preceded it.
    """

    def __init__(self, *, root: Path) -> None:
        self.root = root

    def save(
        self,
        *,
        user_id: str,
        setup: TankSetup,
        name: str,
        analysis: dict[str, Any] | None = None,
    ) -> SavedTankSetup:
        clean_name = _clean_name(name)
        timestamp = self._now_iso()
        setup_id = uuid4().hex

        payload = self._read_store(user_id)
        payload["tank_setups"].append(
            {
                "id": setup_id,
                "name": clean_name,
                **_setup_columns(setup),
                "created_at": timestamp,
                "updated_at": timestamp,
            }
        )
        try:
            self._write_store(user_id, payload)
        except OSError as exc:
            raise TankSetupStoreError(f"Failed to save tank setup: {exc}") from exc

        for table, label, entries in (
            ("tank_fish", "fish", setup.fish),
            ("tank_corals", "corals", setup.corals),
        ):
            if not entries:
                continue
            try:
                rows = _build_species_rows(setup_id, entries)
            except TankSetupValidationError as exc:
                self._rollback_setup(user_id, setup_id)
                raise TankSetupValidationError(f"Failed to save {label}: {exc}") from exc
            try:
                payload = self._read_store(user_id)
                payload[table].extend(rows)
                self._write_store(user_id, payload)
            except (TankSetupStoreError, OSError) as exc:
                self._rollback_setup(user_id, setup_id)
                raise TankSetupStoreError(f"Failed to save {label}: {exc}") from exc

        if analysis:
            self._try_add_analysis(user_id, setup_id, analysis)

        return self.get(user_id=user_id, setup_id=setup_id)

    def get(self, *, user_id: str, setup_id: str) -> SavedTankSetup:
        payload = self._read_store(user_id)
        row = _find_row(payload["tank_setups"], setup_id)
        if row is None:
            raise TankSetupNotFoundError("Tank setup not found.")
        return _assemble(payload, row)

    def list_setups(self, *, user_id: str) -> list[SavedTankSetup]:
        payload = self._read_store(user_id)
        return [_assemble(payload, row) for row in reversed(payload["tank_setups"])]

    def update(
        self,
        *,
        user_id: str,
        setup_id: str,
        setup: TankSetup,
        name: str,
        analysis: dict[str, Any] | None = None,
    ) -> SavedTankSetup:
        clean_name = _clean_name(name)
        payload = self._read_store(user_id)
        row = _find_row(payload["tank_setups"], setup_id)
        if row is None:
            raise TankSetupNotFoundError("Tank setup not found.")

        try:
            fish_rows = _build_species_rows(setup_id, setup.fish)
        except TankSetupValidationError as exc:
            raise TankSetupValidationError(f"Failed to update fish: {exc}") from exc
        try:
            coral_rows = _build_species_rows(setup_id, setup.corals)
        except TankSetupValidationError as exc:
            raise TankSetupValidationError(f"Failed to update corals: {exc}") from exc

        row.update(_setup_columns(setup))
        row["name"] = clean_name
        row["updated_at"] = self._now_iso()
        payload["tank_fish"] = [item for item in payload["tank_fish"] if item.get("tank_setup_id") != setup_id]
        payload["tank_corals"] = [item for item in payload["tank_corals"] if item.get("tank_setup_id") != setup_id]
        payload["tank_fish"].extend(fish_rows)
        payload["tank_corals"].extend(coral_rows)
        try:
            self._write_store(user_id, payload)
        except OSError as exc:
            raise TankSetupStoreError(f"Failed to update tank setup: {exc}") from exc

        if analysis:
            self._try_add_analysis(user_id, setup_id, analysis)

        return self.get(user_id=user_id, setup_id=setup_id)

    def delete(self, *, user_id: str, setup_id: str) -> None:
        payload = self._read_store(user_id)
        if _find_row(payload["tank_setups"], setup_id) is None:
            raise TankSetupNotFoundError("Tank setup not found.")
        self._delete_setup_rows(user_id, setup_id)

    def add_analysis(self, *, user_id: str, setup_id: str, analysis: dict[str, Any]) -> dict[str, Any]:
        payload = self._read_store(user_id)
        if _find_row(payload["tank_setups"], setup_id) is None:
            raise TankSetupNotFoundError("Tank setup not found.")
        record = {
            "id": uuid4().hex,
            "tank_setup_id": setup_id,
            "score": analysis.get("score"),
            "summary": analysis.get("summary") or analysis.get("result") or None,
            "general_assessment": analysis.get("generalAssessment"),
            "breakdown": analysis.get("breakdown") or None,
            "created_at": self._now_iso(),
        }
        payload["analysis_results"].append(record)
        self._write_store(user_id, payload)
        return record

    def list_analyses(self, *, user_id: str, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
        payload = self._read_store(user_id)
        setups = {row["id"]: row for row in payload["tank_setups"]}
        history: list[dict[str, Any]] = []
        for record in reversed(payload["analysis_results"]):
            setup_row = setups.get(record.get("tank_setup_id"))
            if setup_row is None:
                continue
            history.append(
                {
                    "id": record["id"],
                    "tank_setup_name": setup_row.get("name") or "Unknown Setup",
                    "setup_volume": setup_row.get("volume"),
                    "score": record.get("score"),
                    "summary": record.get("summary"),
                    "general_assessment": record.get("general_assessment"),
                    "breakdown": record.get("breakdown"),
                    "created_at": record.get("created_at"),
                }
            )
            if len(history) >= limit:
                break
        return history

    def _try_add_analysis(self, user_id: str, setup_id: str, analysis: dict[str, Any]) -> None:
        try:
            self.add_analysis(user_id=user_id, setup_id=setup_id, analysis=analysis)
        except (TankSetupStoreError, OSError) as exc:
            logger.warning("Failed to save analysis result for setup %s: %s", setup_id, exc)

    def _rollback_setup(self, user_id: str, setup_id: str) -> None:
        try:
            self._delete_setup_rows(user_id, setup_id)
        except (TankSetupStoreError, OSError) as exc:
            logger.error("Failed to remove partially saved setup %s: %s", setup_id, exc)

    def _delete_setup_rows(self, user_id: str, setup_id: str) -> None:
        payload = self._read_store(user_id)
        payload["tank_setups"] = [row for row in payload["tank_setups"] if row.get("id") != setup_id]
        for table in ("tank_fish", "tank_corals", "analysis_results"):
            payload[table] = [row for row in payload[table] if row.get("tank_setup_id") != setup_id]
        self._write_store(user_id, payload)

    def _store_path(self, user_id: str) -> Path:
        return self.root / "tank_setups" / f"{_safe_user_key(user_id)}.json"

    def _read_store(self, user_id: str) -> dict[str, Any]:
        store_path = self._store_path(user_id)
        if not store_path.exists():
            return _empty_store()
        try:
            payload = json.loads(store_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise TankSetupStoreError(f"Failed to read tank setups: {exc}") from exc
        if not isinstance(payload, dict):
            raise TankSetupStoreError("Tank setup store has invalid format.")
        for key, value in _empty_store().items():
            payload.setdefault(key, value)
        return payload

    def _write_store(self, user_id: str, payload: dict[str, Any]) -> None:
        store_path = self._store_path(user_id)
        store_path.parent.mkdir(parents=True, exist_ok=True)
        store_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()


def _empty_store() -> dict[str, Any]:
    return {
        "tank_setups": [],
        "tank_fish": [],
        "tank_corals": [],
        "analysis_results": [],
    }


def _setup_columns(setup: TankSetup) -> dict[str, Any]:
    return {
        "volume": setup.volume,
        "lighting": setup.lighting,
        "filtration": list(setup.filtration),
        "has_protein_skimmer": setup.has_protein_skimmer,
        "has_heater": setup.has_heater,
        "has_wavemaker": setup.has_wavemaker,
        "water_ph": setup.water_params.ph,
        "water_salinity": setup.water_params.salinity,
        "water_temperature": setup.water_params.temperature,
    }


def _build_species_rows(setup_id: str, entries: list[SpeciesEntry]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    seen: set[str] = set()
    for entry in entries:
        species_id = str(entry.species or "").strip()
        if not species_id:
            raise TankSetupValidationError("species id is required")
        if species_id in seen:
            raise TankSetupValidationError(f"duplicate species '{species_id}'")
        if isinstance(entry.quantity, bool) or not isinstance(entry.quantity, int) or entry.quantity < 1:
            raise TankSetupValidationError(f"quantity for '{species_id}' must be a positive integer")
        seen.add(species_id)
        rows.append(
            {
                "tank_setup_id": setup_id,
                "species_id": species_id,
                "quantity": entry.quantity,
            }
        )
    return rows


def _assemble(payload: dict[str, Any], row: dict[str, Any]) -> SavedTankSetup:
    setup_id = row["id"]
    latest_analysis = None
    for record in payload["analysis_results"]:
        if record.get("tank_setup_id") == setup_id:
            latest_analysis = record
    return SavedTankSetup(
        id=setup_id,
        name=row.get("name", ""),
        volume=row["volume"],
        lighting=row["lighting"],
        filtration=list(row.get("filtration") or []),
        has_protein_skimmer=bool(row.get("has_protein_skimmer")),
        has_heater=bool(row.get("has_heater")),
        has_wavemaker=bool(row.get("has_wavemaker")),
        water_ph=row.get("water_ph"),
        water_salinity=row.get("water_salinity"),
        water_temperature=row.get("water_temperature"),
        fish=[
            {"species_id": item["species_id"], "quantity": item["quantity"]}
            for item in payload["tank_fish"]
            if item.get("tank_setup_id") == setup_id
        ],
        corals=[
            {"species_id": item["species_id"], "quantity": item["quantity"]}
            for item in payload["tank_corals"]
            if item.get("tank_setup_id") == setup_id
        ],
        analysis_result=(
            {
                "score": latest_analysis.get("score"),
                "summary": latest_analysis.get("summary"),
                "breakdown": latest_analysis.get("breakdown"),
            }
            if latest_analysis
            else None
        ),
        created_at=row.get("created_at", ""),
        updated_at=row.get("updated_at", ""),
    )


def _find_row(rows: list[dict[str, Any]], row_id: str) -> dict[str, Any] | None:
    for row in rows:
        if row.get("id") == row_id:
            return row
    return None


def _clean_name(name: str) -> str:
    cleaned = str(name or "").strip()
    if not cleaned:
        raise TankSetupValidationError("Setup name is required.")
    return cleaned


def _safe_user_key(user_id: str) -> str:
    normalized = re.sub(r"[^A-Za-z0-9_-]+", "_", str(user_id or "").strip())
    if not normalized.strip("_"):
        raise TankSetupStoreError("A user id is required.")
    return normalized[:128]
