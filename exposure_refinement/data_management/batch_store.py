"""Batch storage with user-scoped access and single-writer discipline.

Follows the same patterns as the other stores of the data layer:
- Keyed by user name, in import order
- Every read-modify-write section runs under one asyncio lock
- Readers get deep copies, so nothing outside the lock mutates stored batches
- Optional JSON persistence; a failed write is logged and the in-memory
  state stays authoritative for the session

Each contact gets a distinct transmission risk level (its import position),
so results for several contacts can be told apart after a scan.

Usage:
    from exposure_refinement.data_management.batch_store import BatchStore

    store = BatchStore("exposures.json")
    batch = await store.add_keys_from_user(packaged_keys)
    await store.apply_pass("Bob", expected_pass=0, mutate=merge_fn)
"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import structlog
from pydantic import ValidationError

from exposure_refinement.data_management.schemas import Batch, PackagedKeys
from exposure_refinement.errors import PersistenceFailure, StalePassResult, UnknownBatch

T = TypeVar("T")

MAX_TRANSMISSION_RISK_LEVEL = 7


class BatchStore:
    """Storage for contact batches.

    Data structure:
    {
        user_name: Batch,
        ...
    }
    """

    def __init__(self, persistence_path: Optional[str] = None) -> None:
        """Initialize BatchStore.

        Args:
            persistence_path: Optional path to JSON file for persistence.
                            If None, storage is memory-only.
        """
        self._batches: Dict[str, Batch] = {}
        self._lock = asyncio.Lock()
        self._persistence_path = Path(persistence_path) if persistence_path else None
        self._logger = structlog.get_logger().bind(component="BatchStore")

        if self._persistence_path and self._persistence_path.exists():
            try:
                self._load_from_file()
            except PersistenceFailure as e:
                self._logger.error("load_failed", error=str(e))
                self._batches = {}

    async def add_keys_from_user(self, package: PackagedKeys) -> Batch:
        """Start (or restart) the batch for a contact's key package.

        A re-import for a known user replaces that user's batch and keeps its
        transmission risk level; a new user gets the next free level.

        Args:
            package: Keys shared by the contact.

        Returns:
            Copy of the new batch.

        Raises:
            ValueError: All transmission risk levels are taken.
        """
        async with self._lock:
            existing = self._batches.get(package.user_name)
            if existing is not None:
                level = existing.transmission_risk_level
            else:
                taken = {b.transmission_risk_level for b in self._batches.values()}
                free = [lvl for lvl in range(MAX_TRANSMISSION_RISK_LEVEL + 1) if lvl not in taken]
                if not free:
                    raise ValueError(
                        f"cannot add {package.user_name!r}: all "
                        f"{MAX_TRANSMISSION_RISK_LEVEL + 1} transmission risk levels are in use"
                    )
                level = free[0]

            batch = Batch.from_package(package, transmission_risk_level=level)
            self._batches[package.user_name] = batch

            self._logger.info(
                "batch_added",
                user_name=package.user_name,
                keys=len(batch.keys),
                transmission_risk_level=level,
                replaced=existing is not None,
            )
            self._save_to_file()
            return batch.model_copy(deep=True)

    async def get_batch(self, user_name: str) -> Optional[Batch]:
        """Get a copy of a user's batch.

        Args:
            user_name: Contact name.

        Returns:
            Batch copy if found, None otherwise.
        """
        async with self._lock:
            batch = self._batches.get(user_name)
            return batch.model_copy(deep=True) if batch else None

    async def list_batches(self) -> List[Batch]:
        """Copies of every batch, in import order."""
        async with self._lock:
            return [b.model_copy(deep=True) for b in self._batches.values()]

    async def apply_pass(
        self,
        user_name: str,
        expected_pass: int,
        mutate: Callable[[Batch], T],
        expected_generation: Optional[str] = None,
    ) -> T:
        """Run ``mutate`` on the stored batch as one serialized write.

        Args:
            user_name: Contact name.
            expected_pass: Pass count the result was computed for.
            mutate: Callback mutating the batch in place. If it raises, the
                batch is not persisted and the error propagates.
            expected_generation: Generation of the batch the result was
                computed for. None skips the check.

        Returns:
            Whatever ``mutate`` returns.

        Raises:
            UnknownBatch: No batch for ``user_name`` (e.g. deleted mid-pass).
            StalePassResult: The batch is no longer at ``expected_pass``, or was
                re-imported since the result was computed.
        """
        async with self._lock:
            batch = self._batches.get(user_name)
            if batch is None:
                raise UnknownBatch(user_name)
            if batch.pass_count != expected_pass:
                raise StalePassResult(user_name, expected_pass, batch.pass_count)
            if expected_generation is not None and batch.generation != expected_generation:
                raise StalePassResult(
                    user_name, expected_pass, batch.pass_count, reason="batch was re-imported"
                )

            result = mutate(batch)
            batch.date_processed = datetime.now(timezone.utc)

            self._logger.debug(
                "batch_updated",
                user_name=user_name,
                pass_count=batch.pass_count,
                exposures=len(batch.exposures),
            )
            self._save_to_file()
            return result

    async def delete_batch(self, user_name: str) -> bool:
        """Delete one user's batch and all its exposures.

        Returns:
            True if deleted, False if not found.
        """
        async with self._lock:
            if self._batches.pop(user_name, None) is None:
                return False
            self._logger.info("batch_deleted", user_name=user_name)
            self._save_to_file()
            return True

    async def delete_all(self) -> int:
        """Delete every batch. Returns how many were removed."""
        async with self._lock:
            count = len(self._batches)
            self._batches = {}
            self._logger.info("all_batches_deleted", count=count)
            self._save_to_file()
            return count

    async def get_stats(self) -> Dict[str, Any]:
        """Summary counts per user."""
        async with self._lock:
            return {
                "total_batches": len(self._batches),
                "total_exposures": sum(len(b.exposures) for b in self._batches.values()),
                "batches": {
                    name: {
                        "keys": b.keys_checked,
                        "exposures": len(b.exposures),
                        "pass_count": b.pass_count,
                        "transmission_risk_level": b.transmission_risk_level,
                    }
                    for name, b in self._batches.items()
                },
            }

    async def export_to_path(self, path: str | Path) -> Path:
        """Write every batch to ``path``.

        Raises:
            PersistenceFailure: The file could not be written.
        """
        async with self._lock:
            target = Path(path)
            self._write(target)
            self._logger.info("batches_exported", path=str(target), count=len(self._batches))
            return target

    async def load(self) -> int:
        """Replace the in-memory batches with the persisted file.

        Returns:
            Number of batches loaded (0 when there is no file yet).

        Raises:
            PersistenceFailure: The file exists but cannot be read or parsed.
                The in-memory batches are kept.
        """
        async with self._lock:
            if not self._persistence_path or not self._persistence_path.exists():
                return 0
            self._load_from_file()
            return len(self._batches)

    async def flush(self) -> None:
        """Persist now, raising instead of logging on failure.

        Raises:
            PersistenceFailure: The store file could not be written.
        """
        async with self._lock:
            if self._persistence_path:
                self._write(self._persistence_path)

    def _serialize(self) -> List[Dict[str, Any]]:
        return [b.model_dump(mode="json", by_alias=True) for b in self._batches.values()]

    def _write(self, path: Path) -> None:
        """Write to JSON file (synchronous)."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            with open(tmp, "w") as f:
                json.dump(self._serialize(), f, indent=2)
            tmp.replace(path)
        except OSError as e:
            raise PersistenceFailure(str(path), e) from e

    def _save_to_file(self) -> None:
        """Save to the persistence file, logging failures."""
        if not self._persistence_path:
            return
        try:
            self._write(self._persistence_path)
        except PersistenceFailure as e:
            self._logger.error("persistence_failed", error=str(e))

    def _load_from_file(self) -> None:
        """Load batches from the persistence file (synchronous)."""
        path = self._persistence_path
        try:
            with open(path) as f:
                data = json.load(f)
            batches = [Batch.model_validate(item) for item in data]
        except (OSError, ValueError, ValidationError) as e:
            raise PersistenceFailure(str(path), e) from e

        self._batches = {b.user_name: b for b in batches}
        self._logger.info("batches_loaded", path=str(path), count=len(self._batches))
