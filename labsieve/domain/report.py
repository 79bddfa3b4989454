"""Patient index and lab report aggregation.

The patient index is filled during the Patient pass and frozen before the
Observation pass reads it. The lab report folds classified observations into
normal and abnormal sections and renders the plain-text summary that is
mailed at the end of a run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional

from pydantic import ValidationError as PydanticValidationError

from labsieve.domain.classifier import classify, classify_resource
from labsieve.domain.models import (
    ClassificationResult,
    ObservationRecord,
    PatientRecord,
)
from labsieve.domain.ports import IndexFrozenError

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"


class PatientIndex:
    """Mapping from ``Patient/<id>`` references to PatientRecord.

    Writes are only accepted until ``freeze()`` is called. Re-adding a
    patient with the same id replaces the earlier entry, so insertion is
    independent of file completion order.
    """

    def __init__(self):
        self._patients: dict[str, PatientRecord] = {}
        self._frozen = False

    def add_resource(self, resource: dict) -> Optional[PatientRecord]:
        """Index a raw Patient resource. Resources without a string id are skipped.

        Raises:
            IndexFrozenError: If the index has already been frozen
        """
        if self._frozen:
            raise IndexFrozenError("Patient index is frozen; the Patient pass has already settled")
        patient_id = resource.get("id")
        if not isinstance(patient_id, str) or not patient_id:
            logger.warning("Skipping Patient resource without an id")
            return None
        record = PatientRecord.from_resource(resource)
        self._patients[record.reference] = record
        return record

    def freeze(self) -> 'PatientIndex':
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, reference: Optional[str]) -> Optional[PatientRecord]:
        if reference is None:
            return None
        return self._patients.get(reference)

    def __contains__(self, reference: str) -> bool:
        return reference in self._patients

    def __len__(self) -> int:
        return len(self._patients)

    def __iter__(self) -> Iterator[str]:
        return iter(self._patients)


@dataclass(frozen=True)
class LabReportEntry:
    """One classified observation as it appears in the report."""

    code_text: Optional[str]
    value: Optional[float]
    classification: ClassificationResult
    patient_name: Optional[str]
    patient_id: Optional[str]
    subject_reference: Optional[str] = None

    def render(self) -> str:
        name = self.patient_name or UNKNOWN
        pid = self.patient_id or UNKNOWN
        reason = self.classification.reason.value
        if self.classification.is_normal:
            return (
                f"{self.code_text}: {_format_value(self.value)}. Reason: {reason}, "
                f"Patient Name: {name}, Patient ID: {pid}"
            )
        return f"{self.code_text}. Reason: {reason}. Patient Name: {name}, Patient ID: {pid}"


def _format_value(value: Optional[float]) -> str:
    if value is None:
        return UNKNOWN
    if float(value).is_integer():
        return str(int(value))
    return str(value)


@dataclass
class LabReport:
    """Aggregated result of the Observation pass.

    ``add_observation`` is commutative with respect to file completion order
    up to the order of entries inside each section.
    """

    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    title: str = "Results of lab tests in sandbox"
    normal: list[LabReportEntry] = field(default_factory=list)
    abnormal: list[LabReportEntry] = field(default_factory=list)
    missing_patients: int = 0

    def add_observation(self, resource: dict, index: PatientIndex) -> LabReportEntry:
        """Classify a raw Observation and file it under normal or abnormal."""
        try:
            observation = ObservationRecord.from_resource(resource)
            classification = classify(observation)
        except PydanticValidationError:
            observation = ObservationRecord.identity(resource)
            classification = classify_resource(resource)
        patient = index.get(observation.subject_reference)
        if patient is None:
            self.missing_patients += 1
            logger.debug(f"No indexed patient for subject {observation.subject_reference}")
        entry = LabReportEntry(
            code_text=observation.code_text,
            value=observation.value,
            classification=classification,
            patient_name=patient.display_name if patient else None,
            patient_id=patient.id if patient else None,
            subject_reference=observation.subject_reference,
        )
        if classification.is_normal:
            self.normal.append(entry)
        else:
            self.abnormal.append(entry)
        return entry

    @property
    def total(self) -> int:
        return len(self.normal) + len(self.abnormal)

    def render(self) -> str:
        """Render the plain-text report body."""
        stamp = self.generated_at.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        message = f"{self.title} (Date: {stamp})\n"
        message += "Abnormal Observations:\n"
        message += "".join(f"{e.render()}\n" for e in self.abnormal)
        message += "\n\n"
        message += "Normal Observations:\n"
        message += "".join(f"{e.render()}\n" for e in self.normal)
        return message
