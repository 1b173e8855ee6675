"""Contact key and batch schemas.

A Batch holds one contact's keys (received as a PackagedKeys file) and the
exposures refined from them. Every key in a batch carries the batch's
transmission risk level, which is how the collaborator's results are routed
back to the batch they belong to.
"""

import base64
import binascii
import uuid
from datetime import datetime, timezone
from typing import Dict, List

from pydantic import BaseModel, Field, field_serializer, field_validator

from exposure_refinement.data_management.schemas.exposure_schema import (
    CAMEL_CONFIG,
    ExposureRecord,
    Fingerprint,
)


class DiagnosisKey(BaseModel):
    """A contact's temporary exposure key. ``keyData`` is base64 in JSON."""

    key_data: bytes
    rolling_period: int = Field(144, ge=0)
    rolling_start_number: int = Field(..., ge=0)
    transmission_risk_level: int = Field(0, ge=0, le=7)

    model_config = CAMEL_CONFIG

    @field_validator("key_data", mode="before")
    @classmethod
    def _decode_base64(cls, value):
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"keyData is not valid base64: {e}") from e
        return value

    @field_serializer("key_data")
    def _encode_base64(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    def with_risk_level(self, transmission_risk_level: int) -> "DiagnosisKey":
        return self.model_copy(update={"transmission_risk_level": transmission_risk_level})


class PackagedKeys(BaseModel):
    """Key package shared by a contact."""

    user_name: str = Field(..., min_length=1)
    date: datetime
    keys: List[DiagnosisKey] = Field(default_factory=list)

    model_config = CAMEL_CONFIG


class Batch(BaseModel):
    """One contact's encounter set and its refinement progress."""

    user_name: str = Field(..., min_length=1)
    date_keys_sent: datetime
    date_processed: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    transmission_risk_level: int = Field(..., ge=0, le=7)
    keys: List[DiagnosisKey] = Field(default_factory=list)
    exposures: List[ExposureRecord] = Field(default_factory=list)
    analysis_passes: int = Field(0, ge=0)
    # Fresh per import; a pass result computed for an earlier import is stale
    generation: str = Field(default_factory=lambda: uuid.uuid4().hex)

    model_config = CAMEL_CONFIG

    @classmethod
    def from_package(cls, package: PackagedKeys, transmission_risk_level: int) -> "Batch":
        """Start a batch, stamping every key with the batch's risk level."""
        return cls(
            user_name=package.user_name,
            date_keys_sent=package.date,
            transmission_risk_level=transmission_risk_level,
            keys=[k.with_risk_level(transmission_risk_level) for k in package.keys],
        )

    @property
    def records(self) -> Dict[Fingerprint, ExposureRecord]:
        return {record.fingerprint: record for record in self.exposures}

    @property
    def pass_count(self) -> int:
        """Minimum pass count over the records; drives which pass runs next."""
        if self.exposures:
            return min(record.pass_count for record in self.exposures)
        return self.analysis_passes

    @property
    def keys_checked(self) -> int:
        return len(self.keys)
