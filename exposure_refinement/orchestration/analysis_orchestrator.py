"""Analysis orchestrator driving successive refinement passes per batch.

Per batch: Pending -> InPass(p) -> ... -> Complete.

Transition rule:
    p = batch pass count (minimum over its records)
    if p + 1 == N the batch is Complete
    otherwise the records with pass_count == p form the work list, the
    batch's keys go to the collaborator with the configuration for pass
    number p + 1, the result is merged and pass_count is incremented for
    exactly the work-list records.

Passes on one batch are strictly sequential (per-batch lock plus a
stale-result check in the store). Distinct batches may run concurrently.

Usage:
    orchestrator = AnalysisOrchestrator(store, collaborator)
    task = orchestrator.run_next_pass("Bob", token)
    outcome = await task
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

from exposure_refinement.config.settings import settings
from exposure_refinement.data_management.batch_store import BatchStore
from exposure_refinement.data_management.schemas import (
    Batch,
    PassConfiguration,
    PassLadder,
    RawMeasurement,
)
from exposure_refinement.engine.merge_engine import MergeEngine, MergeResult
from exposure_refinement.errors import CollaboratorFailure, PassTimedOut, UnknownBatch
from exposure_refinement.orchestration.cancellation import CancellationToken
from exposure_refinement.scanning.collaborator import ScanningCollaborator
from exposure_refinement.utils.logging import get_structured_logger, pass_context

_CANCELLED = object()


class _PassCancelled(Exception):
    """Raised inside the store write when the token fired while waiting for the lock."""


class BatchState(str, Enum):
    """Lifecycle of a batch."""

    PENDING = "pending"
    IN_PASS = "in_pass"
    COMPLETE = "complete"


class PassStatus(str, Enum):
    """How a pass invocation ended (failures raise CollaboratorFailure instead)."""

    COMPLETED = "completed"
    ALREADY_COMPLETE = "already_complete"
    CANCELLED = "cancelled"


@dataclass
class PassOutcome:
    """Result of one pass invocation for one batch."""

    user_name: str
    status: PassStatus
    pass_number: Optional[int] = None
    pass_count: int = 0
    measurements_received: int = 0
    records_updated: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "user_name": self.user_name,
            "status": self.status.value,
            "pass_number": self.pass_number,
            "pass_count": self.pass_count,
            "measurements_received": self.measurements_received,
            "records_updated": self.records_updated,
        }


class AnalysisOrchestrator:
    """Runs refinement passes for stored batches against the scanning collaborator."""

    def __init__(
        self,
        store: BatchStore,
        collaborator: ScanningCollaborator,
        ladder: Optional[PassLadder] = None,
        merge_engine: Optional[MergeEngine] = None,
        pass_timeout: Optional[float] = None,
    ) -> None:
        """Initialize AnalysisOrchestrator.

        Args:
            store: Batch repository (single writer).
            collaborator: Scanning collaborator to evaluate keys with.
            ladder: Refinement ladder. Built from settings if None.
            merge_engine: Merge engine. A fresh one if None.
            pass_timeout: Seconds to wait per pass. Falls back to settings.
        """
        self.store = store
        self.collaborator = collaborator
        self.ladder = ladder if ladder is not None else settings.build_ladder()
        self.merge_engine = merge_engine or MergeEngine()
        self.pass_timeout = pass_timeout if pass_timeout is not None else settings.pass_timeout_seconds
        self._batch_locks: Dict[str, asyncio.Lock] = {}
        self._running: set[str] = set()
        self._logger = get_structured_logger("AnalysisOrchestrator")

    # -- public API ---------------------------------------------------------

    def run_next_pass(
        self,
        user_name: str,
        token: Optional[CancellationToken] = None,
    ) -> "asyncio.Task[PassOutcome]":
        """Schedule the next pass for a batch and return its task.

        Must be called from a running event loop.
        """
        return asyncio.create_task(
            self.run_pass(user_name, token),
            name=f"analysis-pass-{user_name}",
        )

    async def run_pass(
        self,
        user_name: str,
        token: Optional[CancellationToken] = None,
    ) -> PassOutcome:
        """Run the next pass for one batch.

        Raises:
            UnknownBatch: No batch for ``user_name``.
            CollaboratorFailure: The collaborator failed, returned nothing or
                timed out. The batch is left at its last completed pass.
            StalePassResult: The batch was re-imported while the pass ran.
        """
        async with self._lock_for(user_name):
            self._running.add(user_name)
            try:
                return await self._run_pass_locked(user_name, token)
            finally:
                self._running.discard(user_name)

    async def run_to_completion(
        self,
        user_name: str,
        token: Optional[CancellationToken] = None,
    ) -> List[PassOutcome]:
        """Run passes until the batch is complete or a pass is cancelled."""
        outcomes: List[PassOutcome] = []
        while True:
            outcome = await self.run_pass(user_name, token)
            outcomes.append(outcome)
            if outcome.status != PassStatus.COMPLETED:
                return outcomes

    async def analyze_all(
        self,
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Union[PassOutcome, BaseException]]:
        """Run the next pass for every unfinished batch, concurrently.

        Failures are logged and returned per user instead of raised, so one
        contact's failing pass does not hold back the others.
        """
        batches = await self.store.list_batches()
        pending = [b.user_name for b in batches if not self.ladder.is_complete(b.pass_count)]
        if not pending:
            self._logger.info("nothing_to_analyze", batches=len(batches))
            return {}

        results = await asyncio.gather(
            *(self.run_pass(name, token) for name in pending),
            return_exceptions=True,
        )
        outcomes: Dict[str, Union[PassOutcome, BaseException]] = {}
        for name, result in zip(pending, results):
            if isinstance(result, BaseException):
                self._logger.error("pass_failed", user_name=name, error=str(result))
            outcomes[name] = result
        return outcomes

    async def batch_state(self, user_name: str) -> BatchState:
        batch = await self.store.get_batch(user_name)
        if batch is None:
            raise UnknownBatch(user_name)
        if user_name in self._running:
            return BatchState.IN_PASS
        if self.ladder.is_complete(batch.pass_count):
            return BatchState.COMPLETE
        return BatchState.PENDING

    # -- internals ----------------------------------------------------------

    def _lock_for(self, user_name: str) -> asyncio.Lock:
        lock = self._batch_locks.get(user_name)
        if lock is None:
            lock = self._batch_locks[user_name] = asyncio.Lock()
        return lock

    async def _run_pass_locked(
        self,
        user_name: str,
        token: Optional[CancellationToken],
    ) -> PassOutcome:
        batch = await self.store.get_batch(user_name)
        if batch is None:
            raise UnknownBatch(user_name)

        pass_index = batch.pass_count
        if self.ladder.is_complete(pass_index):
            return PassOutcome(user_name, PassStatus.ALREADY_COMPLETE, pass_count=pass_index)

        pass_number = pass_index + 1
        config = self.ladder.for_pass(pass_number)
        with pass_context(user_name, pass_number, config=config.label):
            return await self._execute_pass(batch, pass_index, config, token)

    async def _execute_pass(
        self,
        batch: Batch,
        pass_index: int,
        config: PassConfiguration,
        token: Optional[CancellationToken],
    ) -> PassOutcome:
        user_name = batch.user_name
        pass_number = pass_index + 1

        if token is not None and token.cancelled:
            self._logger.info("pass_cancelled_before_start")
            return PassOutcome(user_name, PassStatus.CANCELLED, pass_number, pass_count=pass_index)

        work_list = [r for r in batch.exposures if r.pass_count == pass_index]
        if pass_index > 0 and not work_list:
            # Nothing was detected at triage, so no later pass can refine anything
            self._logger.info("empty_work_list")
            await self.store.apply_pass(
                user_name,
                pass_index,
                lambda stored: self._advance(stored, pass_index),
                expected_generation=batch.generation,
            )
            return PassOutcome(user_name, PassStatus.COMPLETED, pass_number, pass_count=pass_number)

        self._logger.info("pass_started", keys=len(batch.keys), work_list=len(work_list))
        measurements = await self._evaluate(batch, config, pass_number, token)
        if measurements is _CANCELLED or (token is not None and token.cancelled):
            self._logger.info("pass_cancelled", reason=token.reason if token else None)
            return PassOutcome(user_name, PassStatus.CANCELLED, pass_number, pass_count=pass_index)

        def incorporate(stored: Batch) -> MergeResult:
            if token is not None and token.cancelled:
                raise _PassCancelled()
            return self._incorporate(stored, measurements, pass_index, config)

        try:
            result = await self.store.apply_pass(
                user_name, pass_index, incorporate, expected_generation=batch.generation
            )
        except _PassCancelled:
            self._logger.info("pass_cancelled", reason=token.reason if token else None)
            return PassOutcome(user_name, PassStatus.CANCELLED, pass_number, pass_count=pass_index)

        self._logger.info("pass_completed", measurements=len(measurements), **result.to_dict())
        return PassOutcome(
            user_name,
            PassStatus.COMPLETED,
            pass_number,
            pass_count=pass_number,
            measurements_received=len(measurements),
            records_updated=len(result.refined),
        )

    async def _evaluate(
        self,
        batch: Batch,
        config: PassConfiguration,
        pass_number: int,
        token: Optional[CancellationToken],
    ):
        """Call the collaborator, honouring the timeout and the cancellation token."""
        scan = asyncio.ensure_future(self.collaborator.evaluate(batch.keys, config))
        waiters = {scan}
        cancel_wait = None
        if token is not None:
            cancel_wait = asyncio.ensure_future(token.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.pass_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            scan.add_done_callback(self._discard_late_result)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if scan not in done:
            # The call itself cannot be interrupted; its late result is dropped
            scan.add_done_callback(self._discard_late_result)
            if token is not None and token.cancelled:
                return _CANCELLED
            self._logger.warning("pass_timed_out", timeout=self.pass_timeout)
            raise PassTimedOut(batch.user_name, pass_number, self.pass_timeout)

        try:
            measurements: Optional[Sequence[RawMeasurement]] = scan.result()
        except Exception as e:
            self._logger.error("collaborator_failed", error=str(e))
            raise CollaboratorFailure(batch.user_name, pass_number, str(e)) from e

        if measurements is None:
            self._logger.error("collaborator_returned_nothing")
            raise CollaboratorFailure(batch.user_name, pass_number, "collaborator returned nothing")
        return list(measurements)

    def _discard_late_result(self, scan: "asyncio.Future") -> None:
        if scan.cancelled():
            return
        error = scan.exception()
        if error is not None:
            self._logger.debug("late_result_failed", error=str(error))
        else:
            self._logger.debug("late_result_ignored")

    def _incorporate(
        self,
        batch: Batch,
        measurements: List[RawMeasurement],
        pass_index: int,
        config: PassConfiguration,
    ) -> MergeResult:
        """Merge one pass into the stored batch (runs under the store lock)."""
        engine = self.merge_engine
        if pass_index == 0:
            result = engine.merge_batch(
                [], measurements, 0, config, batch.transmission_risk_level
            )
            batch.exposures = result.records
            work_list = batch.exposures
        else:
            work_list = [r for r in batch.exposures if r.pass_count == pass_index]
            result = engine.merge_batch(
                work_list, measurements, pass_index, config, batch.transmission_risk_level
            )

        for record in work_list:
            record.pass_count = pass_index + 1
        self._advance(batch, pass_index)
        return result

    @staticmethod
    def _advance(batch: Batch, pass_index: int) -> None:
        batch.analysis_passes = max(batch.analysis_passes, pass_index + 1)
