"""Tests for the scanning collaborator adapters."""

import json
import threading
from pathlib import Path

import pytest

from exposure_refinement.data_management.schemas import (
    DiagnosisKey,
    PassConfiguration,
    RawMeasurement,
)
from exposure_refinement.scanning import (
    BlockingScannerAdapter,
    ReplayScanner,
    ScanningCollaborator,
)

CONFIG = PassConfiguration(low_cutoff=50, high_cutoff=56)


def measurement_json(level: int, buckets=(5, 10, 10)) -> dict:
    return {
        "date": "2020-06-10T14:30:00Z",
        "duration": sum(buckets),
        "totalRiskScore": 42,
        "transmissionRiskLevel": level,
        "attenuationValue": 2,
        "attenuationDurations": list(buckets),
    }


@pytest.fixture
def keys() -> list:
    return [DiagnosisKey(key_data=b"\x01" * 16, rolling_start_number=1, transmission_risk_level=5)]


@pytest.fixture
def fixture_file(tmp_path: Path) -> Path:
    path = tmp_path / "replay.json"
    path.write_text(
        json.dumps(
            {
                "50/56": [measurement_json(5), measurement_json(3)],
                "44/53": [measurement_json(5, (5, 12, 10))],
            }
        )
    )
    return path


class TestReplayScanner:
    @pytest.mark.asyncio
    async def test_replays_by_configuration(self, fixture_file: Path, keys: list) -> None:
        scanner = ReplayScanner.from_file(fixture_file)

        triage = await scanner.evaluate(keys, CONFIG)
        refined = await scanner.evaluate(keys, PassConfiguration(low_cutoff=44, high_cutoff=53))

        assert [m.attenuation_durations for m in triage] == [[5, 10, 10]]
        assert refined[0].attenuation_durations == [5, 12, 10]
        assert scanner.calls == ["50/56", "44/53"]

    @pytest.mark.asyncio
    async def test_only_levels_of_submitted_keys(self, fixture_file: Path, keys: list) -> None:
        scanner = ReplayScanner.from_file(fixture_file)
        result = await scanner.evaluate(keys, CONFIG)
        assert {m.transmission_risk_level for m in result} == {5}

    @pytest.mark.asyncio
    async def test_unrecorded_configuration_is_empty(self, fixture_file: Path, keys: list) -> None:
        scanner = ReplayScanner.from_file(fixture_file)
        result = await scanner.evaluate(keys, PassConfiguration(low_cutoff=1, high_cutoff=2))
        assert result == []

    def test_satisfies_protocol(self) -> None:
        assert isinstance(ReplayScanner({}), ScanningCollaborator)


class TestBlockingScannerAdapter:
    @pytest.mark.asyncio
    async def test_runs_in_worker_thread(self, keys: list) -> None:
        seen = {}

        def scan(submitted, config):
            seen["thread"] = threading.get_ident()
            seen["label"] = config.label
            return [RawMeasurement.model_validate(measurement_json(submitted[0].transmission_risk_level))]

        adapter = BlockingScannerAdapter(scan)
        result = await adapter.evaluate(keys, CONFIG)

        assert result[0].transmission_risk_level == 5
        assert seen["label"] == "50/56"
        assert seen["thread"] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_errors_propagate(self, keys: list) -> None:
        def scan(submitted, config):
            raise RuntimeError("radio off")

        with pytest.raises(RuntimeError, match="radio off"):
            await BlockingScannerAdapter(scan).evaluate(keys, CONFIG)
