"""Domain layer for Lab-Sieve.

This module contains the export models, the observation classifier and the
two-phase report service. Domain code depends on Pydantic only.
"""

from .models import (
    AccessToken,
    ClassificationReason,
    ClassificationResult,
    ExportJob,
    ExportManifest,
    ExportState,
    ObservationRecord,
    OutputFile,
    PatientRecord,
)
from .classifier import classify, classify_resource
from .report import LabReport, PatientIndex

__all__ = [
    "AccessToken",
    "ClassificationReason",
    "ClassificationResult",
    "ExportJob",
    "ExportManifest",
    "ExportState",
    "ObservationRecord",
    "OutputFile",
    "PatientRecord",
    "classify",
    "classify_resource",
    "LabReport",
    "PatientIndex",
]
