"""Domain Models for Bulk Export and Lab Classification.

This module defines the canonical data models exchanged between the export
client, the streaming ingester and the classifier. Raw FHIR resources arrive
as dictionaries and are narrowed into these models at the pipeline boundary.

Security Impact:
    - Bearer tokens are excluded from model repr to keep them out of logs
    - Raw resources are kept only on PatientRecord (needed for the report)
    - Observations are transient and never retained after classification

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Type safety enforced at runtime via Pydantic V2
"""

import time
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Authentication
# ============================================================================

class AssertionClaims(BaseModel):
    """Claims of a signed client assertion (RFC 7523 JWT bearer).

    Created per token request and discarded after signing.

    Parameters:
        iss: Issuer (the registered client identifier)
        sub: Subject (same client identifier)
        aud: Audience (the token endpoint URL)
        jti: Unique identifier, fresh for every assertion
        exp: Expiry as epoch seconds
    """

    model_config = ConfigDict(frozen=True)

    iss: str = Field(..., min_length=1)
    sub: str = Field(..., min_length=1)
    aud: str = Field(..., min_length=1)
    jti: str = Field(..., min_length=1)
    exp: int = Field(..., gt=0)

    @classmethod
    def build(
        cls,
        client_id: str,
        audience: str,
        lifetime_minutes: float,
        jti: Optional[str] = None,
        now: Optional[float] = None,
    ) -> 'AssertionClaims':
        """Build claims for ``client_id`` valid for ``lifetime_minutes``.

        Parameters:
            client_id: Used as both issuer and subject
            audience: Token endpoint URL
            lifetime_minutes: Validity window in minutes
            jti: Unique identifier (a random UUID when omitted)
            now: Current epoch seconds (wall clock when omitted)
        """
        current = time.time() if now is None else now
        return cls(
            iss=client_id,
            sub=client_id,
            aud=audience,
            jti=jti or str(uuid.uuid4()),
            exp=round(current + lifetime_minutes * 60),
        )


class AccessToken(BaseModel):
    """Short-lived bearer token returned by the token endpoint.

    Owned by a single run and never persisted. Expiry is informational only:
    nothing refreshes the token during a long poll.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    access_token: str = Field(..., min_length=1, repr=False)
    token_type: str = Field(default="Bearer")
    expires_in: Optional[int] = Field(None, description="Lifetime in seconds")
    scope: Optional[str] = None
    issued_at: datetime = Field(default_factory=_utcnow)

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return self.issued_at + timedelta(seconds=self.expires_in)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return (now or _utcnow()) >= expires_at

    def authorization_header(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}


# ============================================================================
# Bulk export
# ============================================================================

class ExportState(str, Enum):
    """Lifecycle of a bulk export job."""
    REQUESTED = "requested"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class OutputFile(BaseModel):
    """One downloadable file listed in a completed export manifest."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str
    url: str
    count: Optional[int] = None


class ExportManifest(BaseModel):
    """Completion manifest returned by the status endpoint with HTTP 200."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    transaction_time: Optional[str] = Field(None, alias="transactionTime")
    request: Optional[str] = None
    requires_access_token: bool = Field(True, alias="requiresAccessToken")
    output: list[OutputFile] = Field(default_factory=list)
    error: list[OutputFile] = Field(default_factory=list)

    def files_of_type(self, resource_type: str) -> list[OutputFile]:
        return [f for f in self.output if f.type == resource_type]


class ExportJob(BaseModel):
    """A bulk export job as seen by the client.

    Created by the kickoff adapter in state ``requested`` and mutated only by
    the polling state machine. ``completed`` and ``failed`` are terminal.
    """

    model_config = ConfigDict(validate_assignment=True)

    status_url: str
    state: ExportState = ExportState.REQUESTED
    manifest: Optional[ExportManifest] = None
    attempts: int = 0
    last_status_code: Optional[int] = None
    last_progress: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (ExportState.COMPLETED, ExportState.FAILED)

    def mark_pending(self, status_code: Optional[int], progress: Optional[str]) -> None:
        self.state = ExportState.PENDING
        self.last_status_code = status_code
        self.last_progress = progress

    def mark_completed(self, manifest: ExportManifest) -> None:
        self.manifest = manifest
        self.last_status_code = 200
        self.state = ExportState.COMPLETED

    def mark_failed(self) -> None:
        self.state = ExportState.FAILED


# ============================================================================
# Clinical records
# ============================================================================

class PatientRecord(BaseModel):
    """Patient entry of the patient index, keyed by ``Patient/<id>``."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @property
    def reference(self) -> str:
        return f"Patient/{self.id}"

    @classmethod
    def from_resource(cls, resource: dict) -> 'PatientRecord':
        return cls(id=str(resource["id"]), display_name=_display_name(resource), raw=resource)


def _member(value: Any) -> dict:
    """Return ``value`` when it is a JSON object, else an empty one."""
    return value if isinstance(value, dict) else {}


def _first_member(value: Any) -> dict:
    if isinstance(value, list) and value:
        return _member(value[0])
    return {}


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _display_name(resource: dict) -> Optional[str]:
    first = _first_member(resource.get("name"))
    if _text(first.get("text")):
        return first["text"]
    given = first.get("given")
    parts = [g for g in given if isinstance(g, str)] if isinstance(given, list) else []
    parts.append(_text(first.get("family")) or "")
    return " ".join(parts).strip() or None


class ReferenceRange(BaseModel):
    """Clinically expected interval; either bound may be missing."""

    model_config = ConfigDict(frozen=True)

    low: Optional[float] = None
    high: Optional[float] = None


class ObservationRecord(BaseModel):
    """Transient view of a lab Observation, consumed by the classifier."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    code_text: Optional[str] = None
    value: Optional[float] = None
    unit: Optional[str] = None
    reference_range: Optional[ReferenceRange] = None
    has_reference_range: bool = False
    subject_reference: Optional[str] = None

    @classmethod
    def identity(cls, resource: dict) -> 'ObservationRecord':
        """Narrow only the id, code text and subject of an Observation.

        Never raises for a malformed resource; used to report observations
        whose measurement cannot be read.
        """
        return cls(**_identity_fields(resource))

    @classmethod
    def from_resource(cls, resource: dict) -> 'ObservationRecord':
        """Narrow a raw FHIR Observation into the fields the classifier reads.

        Only the first ``referenceRange`` entry is considered. A resource with
        a ``referenceRange`` element that holds no usable bounds still counts
        as having a range. Members of the wrong JSON type read as missing.

        Raises:
            pydantic.ValidationError: If the value or a bound is not numeric
        """
        quantity = _member(resource.get("valueQuantity"))
        ranges = resource.get("referenceRange")
        reference_range = None
        if ranges:
            first = _first_member(ranges)
            reference_range = ReferenceRange(
                low=_member(first.get("low")).get("value"),
                high=_member(first.get("high")).get("value"),
            )
        return cls(
            **_identity_fields(resource),
            value=quantity.get("value"),
            unit=_text(quantity.get("unit")),
            reference_range=reference_range,
            has_reference_range=ranges is not None,
        )


def _identity_fields(resource: dict) -> dict:
    return {
        "id": _text(resource.get("id")),
        "code_text": _text(_member(resource.get("code")).get("text")),
        "subject_reference": _text(_member(resource.get("subject")).get("reference")),
    }


class ClassificationReason(str, Enum):
    """Fixed reason codes reported with every classification."""
    NO_REFERENCE_RANGE = "No reference range found"
    INCOMPLETE_DATA = "Incomplete data"
    WITHIN_RANGE = "Within reference range"
    OUTSIDE_RANGE = "Outside reference range"


class ClassificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_normal: bool
    reason: ClassificationReason


# ============================================================================
# Notification
# ============================================================================

class NotificationMessage(BaseModel):
    """Structured message handed to the notification sink."""

    model_config = ConfigDict(frozen=True)

    sender: str
    recipients: list[str] = Field(..., min_length=1)
    subject: str
    body: str
