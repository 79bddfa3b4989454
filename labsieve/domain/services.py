"""Domain Services - Two-Phase Lab Report Construction.

This module sequences the two resource-type passes over a completed export.
The Patient pass must fully settle before the Observation pass starts, because
every observation line in the report needs its subject's display name.

Architecture:
    - Depends only on the StreamingPort contract, not on httpx
    - ``build_index`` and ``classify_all`` make the ordering explicit: the
      second phase cannot be called without the frozen index the first
      phase returns
"""

import logging
from datetime import datetime
from typing import Optional

from labsieve.domain.models import AccessToken, ExportManifest
from labsieve.domain.ports import StreamBatchReport, StreamingPort
from labsieve.domain.report import LabReport, PatientIndex

logger = logging.getLogger(__name__)

PATIENT_TYPE = "Patient"
OBSERVATION_TYPE = "Observation"


class LabReportService:
    """Builds a LabReport from a completed bulk export.

    Example Usage:
        ```python
        service = LabReportService(NDJSONStreamIngester(client))
        index, patient_batch = await service.build_index(manifest, token)
        report, observation_batch = await service.classify_all(manifest, token, index)
        print(report.render())
        ```
    """

    def __init__(self, streaming: StreamingPort, report_title: Optional[str] = None):
        """Initialize the service.

        Parameters:
            streaming: Adapter that streams manifest output files
            report_title: Optional heading for the rendered report
        """
        self.streaming = streaming
        self.report_title = report_title

    async def build_index(
        self,
        manifest: ExportManifest,
        token: AccessToken,
    ) -> tuple[PatientIndex, StreamBatchReport]:
        """Run the Patient pass and return the frozen patient index.

        Parameters:
            manifest: Completed export manifest
            token: Bearer token for the output file requests

        Returns:
            tuple[PatientIndex, StreamBatchReport]: Frozen index and per-file outcomes
        """
        index = PatientIndex()
        batch = await self.streaming.stream_resources(manifest, token, PATIENT_TYPE, index.add_resource)
        index.freeze()
        logger.info(
            f"Patient pass settled: {len(index)} patients from {batch.succeeded_files}/{batch.file_count} files"
        )
        if not batch.is_complete():
            logger.warning(f"Patient pass had {batch.failed_files} failed file(s); some names may be missing")
        return index, batch

    async def classify_all(
        self,
        manifest: ExportManifest,
        token: AccessToken,
        index: PatientIndex,
        generated_at: Optional[datetime] = None,
    ) -> tuple[LabReport, StreamBatchReport]:
        """Run the Observation pass against a patient index.

        Parameters:
            manifest: Completed export manifest
            token: Bearer token for the output file requests
            index: Patient index produced by ``build_index``
            generated_at: Timestamp for the report header (now when omitted)

        Returns:
            tuple[LabReport, StreamBatchReport]: Aggregated report and per-file outcomes
        """
        if not index.frozen:
            logger.warning("Observation pass started before the patient index was frozen")

        report = LabReport()
        if generated_at is not None:
            report.generated_at = generated_at
        if self.report_title:
            report.title = self.report_title

        batch = await self.streaming.stream_resources(
            manifest,
            token,
            OBSERVATION_TYPE,
            lambda resource: report.add_observation(resource, index),
        )
        logger.info(
            f"Observation pass settled: {report.total} observations "
            f"({len(report.abnormal)} abnormal, {len(report.normal)} normal)"
        )
        if report.missing_patients:
            logger.warning(f"{report.missing_patients} observation(s) reference patients not in the index")
        return report, batch

    async def build_report(
        self,
        manifest: ExportManifest,
        token: AccessToken,
        generated_at: Optional[datetime] = None,
    ) -> tuple[LabReport, list[StreamBatchReport]]:
        """Run both passes in order and return the report with both batch outcomes."""
        index, patient_batch = await self.build_index(manifest, token)
        report, observation_batch = await self.classify_all(manifest, token, index, generated_at)
        return report, [patient_batch, observation_batch]
