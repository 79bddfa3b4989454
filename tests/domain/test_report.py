"""Tests for the patient index and lab report aggregation."""

from datetime import datetime, timezone

import pytest

from labsieve.domain.models import ClassificationReason
from labsieve.domain.ports import IndexFrozenError
from labsieve.domain.report import LabReport, PatientIndex

GENERATED_AT = datetime(2026, 10, 18, 9, 30, 0, tzinfo=timezone.utc)


class TestPatientIndex:
    """Test PatientIndex writes, lookups and freezing."""

    def test_add_and_get(self, make_patient):
        index = PatientIndex()

        record = index.add_resource(make_patient("p1", "Jane Doe"))

        assert record.reference == "Patient/p1"
        assert "Patient/p1" in index
        assert index.get("Patient/p1").display_name == "Jane Doe"
        assert len(index) == 1

    def test_display_name_from_given_and_family(self):
        index = PatientIndex()

        index.add_resource({"id": "p2", "name": [{"given": ["Ann", "Marie"], "family": "Lee"}]})

        assert index.get("Patient/p2").display_name == "Ann Marie Lee"

    def test_patient_without_name(self):
        index = PatientIndex()

        index.add_resource({"id": "p3"})

        assert index.get("Patient/p3").display_name is None

    def test_patient_without_id_is_skipped(self):
        index = PatientIndex()

        assert index.add_resource({"name": [{"text": "Nobody"}]}) is None
        assert len(index) == 0

    def test_non_string_id_is_skipped(self):
        index = PatientIndex()

        assert index.add_resource({"id": 42, "name": [{"text": "Numbered"}]}) is None
        assert len(index) == 0

    def test_name_as_plain_string(self):
        index = PatientIndex()

        record = index.add_resource({"id": "p1", "name": "Jane"})

        assert record.display_name is None
        assert "Patient/p1" in index

    @pytest.mark.parametrize("name,expected", [
        (["Jane"], None),
        ([{"given": "Ann", "family": "Lee"}], "Lee"),
        ([{"given": ["Ann", 7], "family": {"value": "Lee"}}], "Ann"),
        ([{"text": 12}], None),
    ])
    def test_malformed_name_members_are_ignored(self, name, expected):
        index = PatientIndex()

        record = index.add_resource({"id": "p1", "name": name})

        assert record.display_name == expected

    def test_frozen_index_rejects_writes(self, make_patient):
        index = PatientIndex()
        index.add_resource(make_patient("p1"))
        index.freeze()

        with pytest.raises(IndexFrozenError):
            index.add_resource(make_patient("p2"))

        assert index.frozen is True
        assert list(index) == ["Patient/p1"]

    def test_get_unknown_reference(self):
        index = PatientIndex()

        assert index.get("Patient/missing") is None
        assert index.get(None) is None


class TestLabReport:
    """Test report aggregation and rendering."""

    @pytest.fixture
    def index(self, make_patient):
        index = PatientIndex()
        index.add_resource(make_patient("p1", "Jane Doe"))
        index.add_resource(make_patient("p2", "John Roe"))
        return index.freeze()

    def test_observations_are_partitioned(self, index, make_observation):
        report = LabReport(generated_at=GENERATED_AT)

        report.add_observation(make_observation("o1", value=90), index)
        report.add_observation(make_observation("o2", value=200, subject="Patient/p2"), index)
        report.add_observation(make_observation("o3", low=None, high=None), index)

        assert len(report.normal) == 1
        assert len(report.abnormal) == 2
        assert report.total == 3
        assert report.abnormal[1].classification.reason == ClassificationReason.NO_REFERENCE_RANGE

    def test_entry_carries_patient_name(self, index, make_observation):
        report = LabReport(generated_at=GENERATED_AT)

        entry = report.add_observation(make_observation(subject="Patient/p2"), index)

        assert entry.patient_name == "John Roe"
        assert entry.patient_id == "p2"

    def test_unknown_patient_renders_unknown(self, index, make_observation):
        report = LabReport(generated_at=GENERATED_AT)

        entry = report.add_observation(make_observation(subject="Patient/ghost"), index)

        assert report.missing_patients == 1
        assert entry.render() == (
            "Glucose: 90. Reason: Within reference range, Patient Name: Unknown, Patient ID: Unknown"
        )

    def test_malformed_value_is_abnormal_incomplete(self, index, make_observation):
        resource = make_observation()
        resource["valueQuantity"]["value"] = "n/a"
        report = LabReport(generated_at=GENERATED_AT)

        entry = report.add_observation(resource, index)

        assert entry.classification.reason == ClassificationReason.INCOMPLETE_DATA
        assert report.abnormal == [entry]
        assert entry.patient_name == "Jane Doe"

    def test_string_subject_is_reported_without_patient(self, index, make_observation):
        resource = make_observation(value=90)
        resource["subject"] = "Patient/p1"
        report = LabReport(generated_at=GENERATED_AT)

        entry = report.add_observation(resource, index)

        assert entry.subject_reference is None
        assert entry.patient_id is None
        assert entry.classification.reason == ClassificationReason.WITHIN_RANGE
        assert report.missing_patients == 1

    def test_string_code_and_unreadable_value(self, index, make_observation):
        resource = make_observation()
        resource["code"] = "Glucose"
        resource["valueQuantity"]["value"] = "n/a"
        report = LabReport(generated_at=GENERATED_AT)

        entry = report.add_observation(resource, index)

        assert entry.code_text is None
        assert entry.patient_id == "p1"
        assert entry.classification.reason == ClassificationReason.INCOMPLETE_DATA

    @pytest.mark.parametrize("reference_range", [["bad"], [None], {"low": {"value": 70}}, [{"low": 70, "high": 110}]])
    def test_malformed_reference_range_is_incomplete(self, index, make_observation, reference_range):
        resource = make_observation()
        resource["referenceRange"] = reference_range
        report = LabReport(generated_at=GENERATED_AT)

        entry = report.add_observation(resource, index)

        assert entry.classification.reason == ClassificationReason.INCOMPLETE_DATA
        assert report.abnormal == [entry]

    def test_malformed_observation_does_not_stop_later_ones(self, index, make_observation):
        broken = make_observation("o2", subject="Patient/p2")
        broken["subject"] = "Patient/p2"
        report = LabReport(generated_at=GENERATED_AT)

        for resource in (make_observation("o1"), broken, make_observation("o3", subject="Patient/p2")):
            report.add_observation(resource, index)

        assert report.total == 3
        assert [e.patient_id for e in report.normal] == ["p1", None, "p2"]

    def test_render_layout(self, index, make_observation):
        report = LabReport(generated_at=GENERATED_AT)
        report.add_observation(make_observation("o1", code="Glucose", value=90), index)
        report.add_observation(make_observation("o2", code="Potassium", value=6.1, low=3.5, high=5.1), index)

        rendered = report.render()

        assert rendered == (
            "Results of lab tests in sandbox (Date: 2026-10-18T09:30:00.000Z)\n"
            "Abnormal Observations:\n"
            "Potassium. Reason: Outside reference range. Patient Name: Jane Doe, Patient ID: p1\n"
            "\n\n"
            "Normal Observations:\n"
            "Glucose: 90. Reason: Within reference range, Patient Name: Jane Doe, Patient ID: p1\n"
        )

    def test_render_empty_report(self):
        report = LabReport(generated_at=GENERATED_AT, title="Nightly labs")

        rendered = report.render()

        assert rendered.startswith("Nightly labs (Date: 2026-10-18T09:30:00.000Z)\n")
        assert "Abnormal Observations:\n\n\nNormal Observations:\n" in rendered

    def test_render_keeps_fractional_values(self, index, make_observation):
        report = LabReport(generated_at=GENERATED_AT)

        entry = report.add_observation(make_observation(value=4.2, low=3.5, high=5.1), index)

        assert entry.render().startswith("Glucose: 4.2. Reason: Within reference range")
