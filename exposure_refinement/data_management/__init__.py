"""Data management package for the exposure refinement engine.

Provides storage and schemas for:
- Bounded values, duration profiles and pass configurations
- Raw collaborator measurements and refined exposure records
- Contact batches (keys plus refined exposures)

Storage adapters:
- BatchStore: user-scoped, single-writer batch persistence
"""

from exposure_refinement.data_management.batch_store import BatchStore

__all__ = [
    "BatchStore",
]
