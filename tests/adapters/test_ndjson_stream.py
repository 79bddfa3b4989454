"""Tests for the concurrent NDJSON stream ingester."""

import json

import httpx
import pytest

from labsieve.adapters.bulk import NDJSONStreamIngester
from labsieve.domain.models import ClassificationReason, ExportManifest, OutputFile
from labsieve.domain.report import LabReport, PatientIndex


class BrokenStream(httpx.AsyncByteStream):
    """Byte stream that yields some chunks and then drops the connection."""

    def __init__(self, chunks):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadError("connection reset by peer")


def ndjson(records):
    return "".join(json.dumps(r) + "\n" for r in records).encode()


def manifest_for(resource_type, file_count):
    return ExportManifest(output=[
        OutputFile(type=resource_type, url=f"https://files.example.org/{resource_type.lower()}-{i}.ndjson")
        for i in range(file_count)
    ])


class TestStreamResources:
    """Test fan-out over manifest files."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("file_count,records_per_file", [(1, 1), (2, 3), (4, 25)])
    async def test_handler_called_for_every_record(self, token, file_count, records_per_file):
        def handler(request):
            return httpx.Response(200, content=ndjson([{"id": str(i)} for i in range(records_per_file)]))

        received = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Patient", file_count), token, "Patient", received.append
            )

        assert len(received) == file_count * records_per_file
        assert batch.file_count == file_count
        assert batch.record_count == file_count * records_per_file
        assert batch.is_complete()

    @pytest.mark.asyncio
    async def test_only_requested_type_is_fetched(self, token, manifest):
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(200, content=ndjson([{"id": "x"}]))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(manifest, token, "Observation", lambda r: None)

        assert sorted(urls) == [
            "https://files.example.org/observation-1.ndjson",
            "https://files.example.org/observation-2.ndjson",
        ]
        assert batch.resource_type == "Observation"

    @pytest.mark.asyncio
    async def test_request_headers(self, token):
        seen = {}

        def handler(request):
            seen["accept"] = request.headers["Accept"]
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, content=b"")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            await NDJSONStreamIngester(http).stream_resources(manifest_for("Patient", 1), token, "Patient", lambda r: None)

        assert seen["accept"] == "application/fhir+ndjson"
        assert seen["auth"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_no_matching_files(self, token):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Patient", 2), token, "Observation", lambda r: None
            )

        assert batch.file_count == 0
        assert batch.is_complete()

    @pytest.mark.asyncio
    async def test_mid_stream_error_is_isolated(self, token):
        """Test that a dropped connection ends one file without failing the batch."""
        def handler(request):
            if request.url.path.endswith("patient-0.ndjson"):
                return httpx.Response(200, stream=BrokenStream([ndjson([{"id": "a"}, {"id": "b"}])]))
            return httpx.Response(200, content=ndjson([{"id": "c"}, {"id": "d"}, {"id": "e"}]))

        received = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Patient", 2), token, "Patient", received.append
            )

        assert sorted(r["id"] for r in received) == ["a", "b", "c", "d", "e"]
        assert batch.failed_files == 1
        assert batch.succeeded_files == 1
        assert batch.record_count == 5
        failure = batch.failures()[0]
        assert failure.error_type == "ReadError"
        assert failure.error_details["records_before_failure"] == 2
        assert not batch.is_complete()

    @pytest.mark.asyncio
    async def test_http_error_status_is_a_failed_file(self, token):
        def handler(request):
            if request.url.path.endswith("patient-1.ndjson"):
                return httpx.Response(404)
            return httpx.Response(200, content=ndjson([{"id": "a"}]))

        received = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Patient", 2), token, "Patient", received.append
            )

        assert received == [{"id": "a"}]
        assert batch.failures()[0].error_type == "HTTPStatusError"
        assert batch.failures()[0].error_details["url"].endswith("patient-1.ndjson")

    @pytest.mark.asyncio
    async def test_malformed_and_blank_lines_are_skipped(self, token):
        body = b'{"id": "a"}\n\n{not json}\n   \n{"id": "b"}\n'

        received = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body))) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Patient", 1), token, "Patient", received.append
            )

        assert [r["id"] for r in received] == ["a", "b"]
        assert batch.is_complete()
        assert batch.results[0].value == 2
        assert batch.results[0].error_details["skipped_lines"] == 1

    @pytest.mark.asyncio
    async def test_last_line_without_newline(self, token):
        body = b'{"id": "a"}\n{"id": "b"}'

        received = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body))) as http:
            await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Patient", 1), token, "Patient", received.append
            )

        assert [r["id"] for r in received] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_handler_error_ends_only_that_file(self, token):
        def handler(request):
            return httpx.Response(200, content=ndjson([{"id": "ok"}, {"id": "boom"}, {"id": "later"}]))

        received = []

        def record_handler(record):
            if record["id"] == "boom":
                raise ValueError("cannot index record")
            received.append(record)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Patient", 1), token, "Patient", record_handler
            )

        assert received == [{"id": "ok"}]
        assert batch.failures()[0].error_type == "ValueError"
        assert batch.failures()[0].error_details["records_before_failure"] == 1

    @pytest.mark.asyncio
    async def test_max_concurrency(self, token):
        def handler(request):
            return httpx.Response(200, content=ndjson([{"id": request.url.path}]))

        received = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            batch = await NDJSONStreamIngester(http, max_concurrency=2).stream_resources(
                manifest_for("Patient", 5), token, "Patient", received.append
            )

        assert len(received) == 5
        assert batch.succeeded_files == 5

    @pytest.mark.asyncio
    async def test_non_object_lines_are_skipped(self, token):
        body = b'{"id": "a"}\n[1, 2]\n"text"\n5\nnull\n{"id": "b"}\n'

        received = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body))) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Patient", 1), token, "Patient", received.append
            )

        assert [r["id"] for r in received] == ["a", "b"]
        assert batch.is_complete()
        assert batch.results[0].error_details["skipped_lines"] == 4


class TestMalformedResourcesInStream:
    """Test that structurally malformed resources never end a file early."""

    @pytest.mark.asyncio
    async def test_string_subject_keeps_later_observations(self, token, make_patient, make_observation):
        broken = make_observation("o2")
        broken["subject"] = "Patient/p1"
        body = ndjson([make_observation("o1"), broken, make_observation("o3")])
        index = PatientIndex()
        index.add_resource(make_patient("p1", "Jane Doe"))
        index.freeze()
        report = LabReport()

        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body))) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Observation", 1), token, "Observation",
                lambda resource: report.add_observation(resource, index),
            )

        assert batch.is_complete()
        assert batch.record_count == 3
        assert report.total == 3
        assert report.missing_patients == 1
        assert [e.patient_id for e in report.normal] == ["p1", None, "p1"]

    @pytest.mark.asyncio
    async def test_malformed_members_are_incomplete(self, token, make_observation):
        string_code = make_observation("o1")
        string_code["code"] = "Glucose"
        bad_range = make_observation("o2")
        bad_range["referenceRange"] = ["bad"]
        body = ndjson([string_code, bad_range]) + b"[\"not an object\"]\n" + ndjson([make_observation("o3")])
        index = PatientIndex().freeze()
        report = LabReport()

        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body))) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Observation", 1), token, "Observation",
                lambda resource: report.add_observation(resource, index),
            )

        assert batch.is_complete()
        assert batch.results[0].error_details["skipped_lines"] == 1
        assert report.total == 3
        assert [e.code_text for e in report.normal] == [None, "Glucose"]
        assert report.abnormal[0].classification.reason == ClassificationReason.INCOMPLETE_DATA

    @pytest.mark.asyncio
    async def test_string_patient_name_keeps_later_patients(self, token, make_patient):
        body = ndjson([{"resourceType": "Patient", "id": "p1", "name": "Jane"}, make_patient("p2", "John Roe")])
        index = PatientIndex()

        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body))) as http:
            batch = await NDJSONStreamIngester(http).stream_resources(
                manifest_for("Patient", 1), token, "Patient", index.add_resource
            )

        assert batch.is_complete()
        assert list(index) == ["Patient/p1", "Patient/p2"]
        assert index.get("Patient/p1").display_name is None
        assert index.get("Patient/p2").display_name == "John Roe"
