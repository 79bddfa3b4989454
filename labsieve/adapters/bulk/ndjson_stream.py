"""NDJSON Stream Ingestion Adapter.

This adapter implements the StreamingPort contract over a completed bulk
export manifest. It opens one streaming GET per output file of the requested
resource type, runs them concurrently on the event loop and hands every
parsed line to the caller's handler as soon as it arrives.

Security Impact:
    - Each file is isolated: a broken download ends only that file
    - Malformed lines are logged and skipped without echoing their content
    - Bearer tokens are sent only to URLs listed in the manifest

Architecture:
    - Implements StreamingPort (Hexagonal Architecture)
    - Streaming pattern keeps memory flat regardless of export size
    - Fail-safe design: the batch always settles and reports per-file Results
"""

import asyncio
import json
import logging
from typing import Optional

import httpx

from labsieve.domain.models import AccessToken, ExportManifest, OutputFile
from labsieve.domain.ports import RecordHandler, Result, StreamBatchReport, StreamingPort

logger = logging.getLogger(__name__)


class NDJSONStreamIngester(StreamingPort):
    """Concurrent NDJSON ingester for bulk export output files.

    Key Features:
        - Fan-out: one task per matching output file, started together
        - Streaming: records reach the handler line by line
        - Settling: returns after every file finished or failed
        - Reporting: one Result per file (record count or error)

    Example Usage:
        ```python
        ingester = NDJSONStreamIngester(client)
        patients = {}
        batch = await ingester.stream_resources(
            manifest, token, "Patient",
            lambda r: patients.__setitem__(f"Patient/{r['id']}", r),
        )
        if not batch.is_complete():
            ...
        ```
    """

    def __init__(self, client: httpx.AsyncClient, max_concurrency: Optional[int] = None):
        """Initialize the ingester.

        Parameters:
            client: Shared async HTTP client
            max_concurrency: Optional cap on simultaneous downloads (None = one per file)
        """
        self.client = client
        self.max_concurrency = max_concurrency
        self.adapter_name = "ndjson_stream_ingester"

    async def stream_resources(
        self,
        manifest: ExportManifest,
        token: AccessToken,
        resource_type: str,
        handler: RecordHandler,
    ) -> StreamBatchReport:
        """Stream every output file of ``resource_type`` into ``handler``.

        Parameters:
            manifest: Completed export manifest
            token: Bearer token sent with every file request
            resource_type: Resource type tag to select (e.g. "Observation")
            handler: Callback invoked once per parsed record

        Returns:
            StreamBatchReport: One Result per selected file, in manifest order
        """
        files = manifest.files_of_type(resource_type)
        logger.info(f"Streaming {len(files)} {resource_type} file(s)")
        if not files:
            return StreamBatchReport(resource_type=resource_type)

        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        async def run(output_file: OutputFile) -> Result[int]:
            if semaphore is None:
                return await self._stream_file(output_file, token, handler)
            async with semaphore:
                return await self._stream_file(output_file, token, handler)

        results = await asyncio.gather(*(run(f) for f in files))
        batch = StreamBatchReport(resource_type=resource_type, results=list(results))

        for failure in batch.failures():
            details = failure.error_details or {}
            logger.warning(
                f"{resource_type} file ended early after {details.get('records_before_failure', 0)} "
                f"record(s): {failure.error_type}: {failure.error} ({details.get('url')})"
            )
        logger.info(
            f"{resource_type} pass: {batch.record_count} record(s), "
            f"{batch.succeeded_files} file(s) complete, {batch.failed_files} failed"
        )
        return batch

    async def _stream_file(
        self,
        output_file: OutputFile,
        token: AccessToken,
        handler: RecordHandler,
    ) -> Result[int]:
        """Stream a single output file. Never raises for per-file errors."""
        delivered = 0
        skipped = 0
        headers = {"Accept": "application/fhir+ndjson", **token.authorization_header()}

        try:
            async with self.client.stream("GET", output_file.url, headers=headers) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError as e:
                        skipped += 1
                        logger.warning(f"Skipping malformed line in {output_file.url}: {e.msg} (col {e.colno})")
                        continue
                    if not isinstance(record, dict):
                        skipped += 1
                        logger.warning(f"Skipping non-object line in {output_file.url}: {type(record).__name__}")
                        continue
                    handler(record)
                    delivered += 1
        except httpx.HTTPError as e:
            return Result.failure_result(
                e,
                error_details={
                    "url": output_file.url,
                    "resource_type": output_file.type,
                    "records_before_failure": delivered,
                    "skipped_lines": skipped,
                },
            )
        except Exception as e:
            # Handler errors end this file only
            logger.error(f"Record handler failed on {output_file.url}: {e}", exc_info=True)
            return Result.failure_result(
                e,
                error_details={
                    "url": output_file.url,
                    "resource_type": output_file.type,
                    "records_before_failure": delivered,
                    "skipped_lines": skipped,
                },
            )

        logger.debug(f"Finished {output_file.url}: {delivered} record(s), {skipped} skipped")
        return Result.success_result(
            delivered,
            details={"url": output_file.url, "resource_type": output_file.type, "skipped_lines": skipped},
        )
