"""Observation classifier.

Pure functions deciding whether a lab measurement lies inside its reference
range. The policy is evaluated in a fixed order and always returns a
ClassificationResult; malformed input classifies as incomplete data.
"""

import logging

from pydantic import ValidationError as PydanticValidationError

from labsieve.domain.models import (
    ClassificationReason,
    ClassificationResult,
    ObservationRecord,
)

logger = logging.getLogger(__name__)


def classify(observation: ObservationRecord) -> ClassificationResult:
    """Classify a single observation against its reference range.

    Policy, in order:
        1. No reference range element: not normal.
        2. Missing value, low bound or high bound: not normal, incomplete.
        3. Value within [low, high] inclusive: normal.
        4. Otherwise: not normal, outside range.

    Parameters:
        observation: Narrowed Observation record

    Returns:
        ClassificationResult: Normal flag and reason code
    """
    has_range = observation.has_reference_range or observation.reference_range is not None
    if not has_range:
        return ClassificationResult(is_normal=False, reason=ClassificationReason.NO_REFERENCE_RANGE)

    reference_range = observation.reference_range
    if (
        observation.value is None
        or reference_range is None
        or reference_range.low is None
        or reference_range.high is None
    ):
        return ClassificationResult(is_normal=False, reason=ClassificationReason.INCOMPLETE_DATA)

    if reference_range.low <= observation.value <= reference_range.high:
        return ClassificationResult(is_normal=True, reason=ClassificationReason.WITHIN_RANGE)
    return ClassificationResult(is_normal=False, reason=ClassificationReason.OUTSIDE_RANGE)


def classify_resource(resource: dict) -> ClassificationResult:
    """Classify a raw FHIR Observation dictionary.

    Values that cannot be read as numbers classify as incomplete data
    instead of raising.
    """
    if resource.get("referenceRange") is None:
        return ClassificationResult(is_normal=False, reason=ClassificationReason.NO_REFERENCE_RANGE)
    try:
        observation = ObservationRecord.from_resource(resource)
    except PydanticValidationError as e:
        logger.debug(f"Observation {resource.get('id')} is malformed: {e}")
        return ClassificationResult(is_normal=False, reason=ClassificationReason.INCOMPLETE_DATA)
    return classify(observation)
