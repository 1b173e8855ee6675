"""Adapters for the external scanning collaborator."""

from exposure_refinement.scanning.collaborator import (
    BlockingScannerAdapter,
    ReplayScanner,
    ScanningCollaborator,
)

__all__ = ["BlockingScannerAdapter", "ReplayScanner", "ScanningCollaborator"]
