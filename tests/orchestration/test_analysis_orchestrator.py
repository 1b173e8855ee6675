"""Tests for AnalysisOrchestrator.

Tests cover:
- Pass sequencing and configuration selection along the ladder
- Work list handling and completion
- Collaborator failure, empty result and timeout
- Cancellation before and during a pass
- Concurrency (same batch serialized, distinct batches independent)
- Stale results after a re-import, cancellation while waiting for the store
- Records that are already ahead of the batch
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from exposure_refinement.data_management.batch_store import BatchStore
from exposure_refinement.data_management.schemas import (
    BoundedValue,
    DiagnosisKey,
    PackagedKeys,
    PassLadder,
    RawMeasurement,
)
from exposure_refinement.errors import (
    CollaboratorFailure,
    PassTimedOut,
    StalePassResult,
    UnknownBatch,
)
from exposure_refinement.orchestration import (
    AnalysisOrchestrator,
    BatchState,
    CancellationToken,
    PassStatus,
)

LADDER = PassLadder.from_thresholds([50, 56, 44, 53, 59, 65, 47, 62])
SENT = datetime(2020, 6, 12, 9, 0, tzinfo=timezone.utc)
DAY_ONE = datetime(2020, 6, 10, 14, 30, tzinfo=timezone.utc)
DAY_TWO = datetime(2020, 6, 11, 8, 0, tzinfo=timezone.utc)


def measure(buckets: List[int], when: datetime = DAY_ONE, level: int = 0) -> RawMeasurement:
    return RawMeasurement(
        date=when,
        duration=sum(buckets),
        total_risk_score=42,
        transmission_risk_level=level,
        attenuation_value=2,
        attenuation_durations=buckets,
    )


def package(user_name: str) -> PackagedKeys:
    return PackagedKeys(
        user_name=user_name,
        date=SENT,
        keys=[
            DiagnosisKey(key_data=b"\x01" * 16, rolling_start_number=2650000),
            DiagnosisKey(key_data=b"\x02" * 16, rolling_start_number=2650144),
        ],
    )


class FakeCollaborator:
    """Recorded responses per configuration label, optionally held behind a gate."""

    def __init__(
        self,
        responses: Optional[Dict[str, List[RawMeasurement]]] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.responses = responses or {}
        self.gate = gate
        self.calls: List[str] = []
        self.started = asyncio.Event()

    async def evaluate(self, keys, config):
        self.calls.append(config.label)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        levels = {key.transmission_risk_level for key in keys}
        return [m for m in self.responses.get(config.label, []) if m.transmission_risk_level in levels]


REFERENCE_RESPONSES = {
    "50/56": [measure([5, 10, 10]), measure([1, 2, 3], when=DAY_TWO)],
    "44/53": [measure([5, 12, 10])],
    "59/65": [measure([5, 12, 10]), measure([1, 2, 3], when=DAY_TWO)],
}


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> BatchStore:
    return BatchStore()


@pytest.fixture
def collaborator() -> FakeCollaborator:
    return FakeCollaborator(REFERENCE_RESPONSES)


@pytest.fixture
def orchestrator(store: BatchStore, collaborator: FakeCollaborator) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(store, collaborator, ladder=LADDER, pass_timeout=5.0)


# ── Sequencing ───────────────────────────────────────────────────────────


class TestPassSequencing:
    @pytest.mark.asyncio
    async def test_triage_creates_records(
        self, store: BatchStore, orchestrator: AnalysisOrchestrator
    ) -> None:
        await store.add_keys_from_user(package("Bob"))

        outcome = await orchestrator.run_pass("Bob")

        assert outcome.status == PassStatus.COMPLETED
        assert outcome.pass_number == 1
        assert outcome.measurements_received == 2
        batch = await store.get_batch("Bob")
        assert batch.pass_count == 1
        assert [r.pass_count for r in batch.exposures] == [1, 1]

    @pytest.mark.asyncio
    async def test_configuration_follows_ladder(
        self,
        store: BatchStore,
        orchestrator: AnalysisOrchestrator,
        collaborator: FakeCollaborator,
    ) -> None:
        await store.add_keys_from_user(package("Bob"))

        outcomes = await orchestrator.run_to_completion("Bob")

        assert collaborator.calls == ["50/56", "44/53", "59/65"]
        assert [o.status for o in outcomes] == [
            PassStatus.COMPLETED,
            PassStatus.COMPLETED,
            PassStatus.COMPLETED,
            PassStatus.ALREADY_COMPLETE,
        ]
        assert await orchestrator.batch_state("Bob") == BatchState.COMPLETE

    @pytest.mark.asyncio
    async def test_complete_batch_is_not_scanned_again(
        self,
        store: BatchStore,
        orchestrator: AnalysisOrchestrator,
        collaborator: FakeCollaborator,
    ) -> None:
        await store.add_keys_from_user(package("Bob"))
        await orchestrator.run_to_completion("Bob")
        calls = len(collaborator.calls)

        outcome = await orchestrator.run_pass("Bob")

        assert outcome.status == PassStatus.ALREADY_COMPLETE
        assert outcome.pass_count == 3
        assert len(collaborator.calls) == calls

    @pytest.mark.asyncio
    async def test_refinement_reaches_exact_values(
        self, store: BatchStore, orchestrator: AnalysisOrchestrator
    ) -> None:
        await store.add_keys_from_user(package("Bob"))
        await orchestrator.run_pass("Bob")
        await orchestrator.run_pass("Bob")

        batch = await store.get_batch("Bob")
        record = batch.records[measure([5, 12, 10]).fingerprint]
        assert record.profile.durations[1] == BoundedValue.from_exact(12)
        assert record.classified_level == BoundedValue.from_exact(2)

    @pytest.mark.asyncio
    async def test_whole_work_list_advances(
        self, store: BatchStore, orchestrator: AnalysisOrchestrator
    ) -> None:
        await store.add_keys_from_user(package("Bob"))
        await orchestrator.run_pass("Bob")

        outcome = await orchestrator.run_pass("Bob")

        assert outcome.records_updated == 1
        batch = await store.get_batch("Bob")
        assert [r.pass_count for r in batch.exposures] == [2, 2]
        unmatched = batch.records[measure([1, 2, 3], when=DAY_TWO).fingerprint]
        assert not unmatched.profile.durations[0].exact

    @pytest.mark.asyncio
    async def test_nothing_found_skips_later_scans(self, store: BatchStore) -> None:
        collaborator = FakeCollaborator({})
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))

        outcomes = await orchestrator.run_to_completion("Bob")

        assert collaborator.calls == ["50/56"]
        assert [o.pass_number for o in outcomes[:3]] == [1, 2, 3]
        batch = await store.get_batch("Bob")
        assert batch.exposures == []
        assert batch.analysis_passes == 3

    @pytest.mark.asyncio
    async def test_unknown_user(self, orchestrator: AnalysisOrchestrator) -> None:
        with pytest.raises(UnknownBatch):
            await orchestrator.run_pass("nobody")


# ── Failures ─────────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_collaborator_error_leaves_batch_unchanged(self, store: BatchStore) -> None:
        collaborator = AsyncMock()
        collaborator.evaluate.side_effect = RuntimeError("scanner offline")
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        before = await store.add_keys_from_user(package("Bob"))

        with pytest.raises(CollaboratorFailure) as exc_info:
            await orchestrator.run_pass("Bob")

        assert exc_info.value.pass_number == 1
        assert "scanner offline" in str(exc_info.value)
        assert await store.get_batch("Bob") == before

    @pytest.mark.asyncio
    async def test_no_result_is_a_failure(self, store: BatchStore) -> None:
        collaborator = AsyncMock()
        collaborator.evaluate.return_value = None
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))

        with pytest.raises(CollaboratorFailure):
            await orchestrator.run_pass("Bob")

        assert (await store.get_batch("Bob")).pass_count == 0

    @pytest.mark.asyncio
    async def test_failed_pass_can_be_retried(self, store: BatchStore) -> None:
        collaborator = AsyncMock()
        collaborator.evaluate.side_effect = [RuntimeError("flaky"), [measure([5, 10, 10])]]
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))

        with pytest.raises(CollaboratorFailure):
            await orchestrator.run_pass("Bob")
        outcome = await orchestrator.run_pass("Bob")

        assert outcome.status == PassStatus.COMPLETED
        assert outcome.pass_number == 1

    @pytest.mark.asyncio
    async def test_timeout(self, store: BatchStore) -> None:
        gate = asyncio.Event()
        collaborator = FakeCollaborator(REFERENCE_RESPONSES, gate=gate)
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER, pass_timeout=0.05)
        await store.add_keys_from_user(package("Bob"))

        with pytest.raises(PassTimedOut) as exc_info:
            await orchestrator.run_pass("Bob")

        assert isinstance(exc_info.value, CollaboratorFailure)
        assert (await store.get_batch("Bob")).pass_count == 0

        # The late answer is dropped; a retry runs the same pass again
        gate.set()
        await asyncio.sleep(0)
        outcome = await orchestrator.run_pass("Bob")
        assert outcome.pass_number == 1
        assert (await store.get_batch("Bob")).pass_count == 1

    @pytest.mark.asyncio
    async def test_batch_deleted_mid_pass(self, store: BatchStore) -> None:
        gate = asyncio.Event()
        collaborator = FakeCollaborator(REFERENCE_RESPONSES, gate=gate)
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))

        task = orchestrator.run_next_pass("Bob")
        await collaborator.started.wait()
        await store.delete_batch("Bob")
        gate.set()

        with pytest.raises(UnknownBatch):
            await task


# ── Cancellation ─────────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(
        self,
        store: BatchStore,
        orchestrator: AnalysisOrchestrator,
        collaborator: FakeCollaborator,
    ) -> None:
        await store.add_keys_from_user(package("Bob"))
        token = CancellationToken()
        token.cancel("user left the screen")

        outcome = await orchestrator.run_pass("Bob", token)

        assert outcome.status == PassStatus.CANCELLED
        assert collaborator.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_mid_pass_ignores_late_result(self, store: BatchStore) -> None:
        gate = asyncio.Event()
        collaborator = FakeCollaborator(REFERENCE_RESPONSES, gate=gate)
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))
        token = CancellationToken()

        task = orchestrator.run_next_pass("Bob", token)
        await collaborator.started.wait()
        token.cancel()
        outcome = await task

        gate.set()
        await asyncio.sleep(0)

        assert outcome.status == PassStatus.CANCELLED
        batch = await store.get_batch("Bob")
        assert batch.pass_count == 0
        assert batch.exposures == []


# ── Concurrency ──────────────────────────────────────────────────────────


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_batch_passes_are_serialized(
        self,
        store: BatchStore,
        orchestrator: AnalysisOrchestrator,
        collaborator: FakeCollaborator,
    ) -> None:
        await store.add_keys_from_user(package("Bob"))

        first, second = await asyncio.gather(
            orchestrator.run_pass("Bob"), orchestrator.run_pass("Bob")
        )

        assert sorted([first.pass_number, second.pass_number]) == [1, 2]
        assert collaborator.calls == ["50/56", "44/53"]
        assert (await store.get_batch("Bob")).pass_count == 2

    @pytest.mark.asyncio
    async def test_run_next_pass_returns_task(
        self, store: BatchStore, orchestrator: AnalysisOrchestrator
    ) -> None:
        await store.add_keys_from_user(package("Bob"))

        task = orchestrator.run_next_pass("Bob")

        assert isinstance(task, asyncio.Task)
        assert (await task).status == PassStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_state_while_in_pass(self, store: BatchStore) -> None:
        gate = asyncio.Event()
        collaborator = FakeCollaborator(REFERENCE_RESPONSES, gate=gate)
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))
        assert await orchestrator.batch_state("Bob") == BatchState.PENDING

        task = orchestrator.run_next_pass("Bob")
        await collaborator.started.wait()
        assert await orchestrator.batch_state("Bob") == BatchState.IN_PASS

        gate.set()
        await task
        assert await orchestrator.batch_state("Bob") == BatchState.PENDING

    @pytest.mark.asyncio
    async def test_analyze_all_isolates_failures(self, store: BatchStore) -> None:
        async def evaluate(keys, config):
            if keys[0].transmission_risk_level == 1:
                raise RuntimeError("device busy")
            return [measure([5, 10, 10], level=0)]

        collaborator = AsyncMock()
        collaborator.evaluate.side_effect = evaluate
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))
        await store.add_keys_from_user(package("Alice"))

        results = await orchestrator.analyze_all()

        assert results["Bob"].status == PassStatus.COMPLETED
        assert isinstance(results["Alice"], CollaboratorFailure)
        assert (await store.get_batch("Bob")).pass_count == 1
        assert (await store.get_batch("Alice")).pass_count == 0

    @pytest.mark.asyncio
    async def test_analyze_all_skips_complete_batches(
        self, store: BatchStore, orchestrator: AnalysisOrchestrator
    ) -> None:
        await store.add_keys_from_user(package("Bob"))
        await orchestrator.run_to_completion("Bob")

        assert await orchestrator.analyze_all() == {}


# ── Stale and late results ───────────────────────────────────────────────


class GatedStore(BatchStore):
    """Signals when a pass result starts waiting for the store."""

    def __init__(self) -> None:
        super().__init__()
        self.writing = asyncio.Event()

    async def apply_pass(self, user_name, expected_pass, mutate, expected_generation=None):
        self.writing.set()
        return await super().apply_pass(user_name, expected_pass, mutate, expected_generation)


class TestStaleResults:
    @pytest.mark.asyncio
    async def test_reimport_during_triage_discards_result(self, store: BatchStore) -> None:
        gate = asyncio.Event()
        collaborator = FakeCollaborator(REFERENCE_RESPONSES, gate=gate)
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))

        task = orchestrator.run_next_pass("Bob")
        await collaborator.started.wait()
        reimported = PackagedKeys(
            user_name="Bob",
            date=SENT,
            keys=[DiagnosisKey(key_data=b"\x03" * 16, rolling_start_number=2650288)],
        )
        await store.add_keys_from_user(reimported)
        gate.set()

        with pytest.raises(StalePassResult):
            await task

        batch = await store.get_batch("Bob")
        assert batch.pass_count == 0
        assert batch.analysis_passes == 0
        assert batch.exposures == []

        # The new keys get their own triage scan
        outcome = await orchestrator.run_pass("Bob")
        assert outcome.pass_number == 1
        assert collaborator.calls == ["50/56", "50/56"]

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_store(self) -> None:
        store = GatedStore()
        gate = asyncio.Event()
        collaborator = FakeCollaborator(REFERENCE_RESPONSES, gate=gate)
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))
        token = CancellationToken()

        task = orchestrator.run_next_pass("Bob", token)
        await collaborator.started.wait()
        async with store._lock:
            gate.set()
            await store.writing.wait()
            token.cancel("closed")

        outcome = await task

        assert outcome.status == PassStatus.CANCELLED
        batch = await store.get_batch("Bob")
        assert batch.pass_count == 0
        assert batch.exposures == []


# ── Mixed record progress ────────────────────────────────────────────────


class TestRecordLevelWorkList:
    @pytest.mark.asyncio
    async def test_records_ahead_of_batch_are_left_alone(self, store: BatchStore) -> None:
        responses = dict(REFERENCE_RESPONSES)
        responses["44/53"] = [measure([5, 12, 10]), measure([1, 2, 4], when=DAY_TWO)]
        collaborator = FakeCollaborator(responses)
        orchestrator = AnalysisOrchestrator(store, collaborator, ladder=LADDER)
        await store.add_keys_from_user(package("Bob"))
        await orchestrator.run_pass("Bob")

        ahead = measure([1, 2, 3], when=DAY_TWO).fingerprint

        def move_ahead(batch) -> None:
            batch.records[ahead].pass_count = 2

        await store.apply_pass("Bob", 1, move_ahead)
        before = (await store.get_batch("Bob")).records[ahead]
        assert (await store.get_batch("Bob")).pass_count == 1

        outcome = await orchestrator.run_pass("Bob")

        assert outcome.pass_number == 2
        assert outcome.records_updated == 1
        batch = await store.get_batch("Bob")
        assert batch.records[ahead] == before
        behind = batch.records[measure([5, 12, 10]).fingerprint]
        assert behind.pass_count == 2
        assert behind.profile.durations[1] == BoundedValue.from_exact(12)
