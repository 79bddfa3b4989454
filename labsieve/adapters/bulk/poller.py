"""Export Polling State Machine.

Polls the job-status location until the server reports completion with
HTTP 200 and a manifest. Every other outcome, whether a 202 with an
``X-Progress`` header, an unexpected status or a transport error, keeps the
job pending and is retried after a fixed delay. A 200 whose body is not a
manifest ends the job as failed: the server considers the job done, so
polling again cannot yield a different answer.

The loop is unbounded unless a PollingGuard with limits is supplied. The
delay function is injected so tests can drive the loop on virtual time.

Security Impact:
    - Bearer tokens are sent only as headers and never logged
    - Transient failures are logged, not raised
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from labsieve.domain.guardrails import PollingGuard
from labsieve.domain.models import AccessToken, ExportJob, ExportManifest
from labsieve.domain.ports import PollingAbortedError

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PollOutcome:
    """Result of a single status request.

    Attributes:
        completed: True only for HTTP 200 with a valid manifest
        manifest: The completion manifest when completed
        status_code: HTTP status, or None on transport error
        progress: Value of the ``X-Progress`` header, if any
        error: Description of a transport or decoding error
        unreadable_manifest: True for HTTP 200 whose body is not a manifest
    """

    completed: bool
    manifest: Optional[ExportManifest] = None
    status_code: Optional[int] = None
    progress: Optional[str] = None
    error: Optional[str] = None
    unreadable_manifest: bool = False


class ExportPoller:
    """Drives an ExportJob from ``requested`` to ``completed``.

    Example Usage:
        ```python
        poller = ExportPoller(client, poll_interval=30)
        job = await poller.wait_for_completion(status_url, token)
        patients = job.manifest.files_of_type("Patient")
        ```
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        poll_interval: float = 30.0,
        sleep: Sleeper = asyncio.sleep,
        guard: Optional[PollingGuard] = None,
    ):
        """Initialize the poller.

        Parameters:
            client: Shared async HTTP client
            poll_interval: Fixed delay in seconds between polls
            sleep: Awaitable delay function (``asyncio.sleep`` by default)
            guard: Optional stop conditions (unbounded when omitted)
        """
        self.client = client
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.guard = guard or PollingGuard()

    async def poll_once(self, status_url: str, token: AccessToken) -> PollOutcome:
        """Issue one status request. Never raises for HTTP or transport errors."""
        try:
            response = await self.client.get(status_url, headers=token.authorization_header())
        except httpx.HTTPError as e:
            logger.warning(f"Error polling bulk export status ({type(e).__name__}: {e}). Retrying...")
            return PollOutcome(completed=False, error=f"{type(e).__name__}: {e}")

        progress = response.headers.get("X-Progress")
        if response.status_code != 200:
            logger.info(f"Bulk export pending: status={response.status_code} progress={progress}")
            return PollOutcome(completed=False, status_code=response.status_code, progress=progress)

        try:
            manifest = ExportManifest.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            logger.error(f"Bulk export status returned 200 with an unreadable manifest: {e}")
            return PollOutcome(
                completed=False, status_code=200, progress=progress, error=str(e), unreadable_manifest=True
            )

        logger.info(f"Bulk export complete: {len(manifest.output)} output file(s)")
        return PollOutcome(completed=True, manifest=manifest, status_code=200, progress=progress)

    async def wait_for_completion(
        self,
        job: Union[ExportJob, str],
        token: AccessToken,
    ) -> ExportJob:
        """Poll until the job completes.

        Parameters:
            job: ExportJob from the kickoff, or a bare status URL
            token: Bearer token (not refreshed while polling)

        Returns:
            ExportJob: The job in state ``completed`` with its manifest

        Raises:
            PollingAbortedError: If the guard stops the loop, or the server
                reports completion with a body that is not a manifest
        """
        if isinstance(job, str):
            job = ExportJob(status_url=job)

        self.guard.start()
        expiry_warned = False

        while True:
            outcome = await self.poll_once(job.status_url, token)
            job.attempts += 1

            if outcome.completed:
                job.mark_completed(outcome.manifest)
                logger.info(f"Export job completed after {job.attempts} status request(s)")
                return job

            if outcome.unreadable_manifest:
                job.mark_failed()
                raise PollingAbortedError(
                    f"Export status returned 200 without a readable manifest: {outcome.error}",
                    attempts=job.attempts,
                    status_url=job.status_url,
                )

            job.mark_pending(outcome.status_code, outcome.progress)

            if not expiry_warned and token.is_expired():
                logger.warning("Access token has expired while polling; later requests may be rejected")
                expiry_warned = True

            if self.guard.should_stop(job):
                job.mark_failed()
                raise PollingAbortedError(
                    f"Export job did not complete after {job.attempts} status request(s)",
                    attempts=job.attempts,
                    status_url=job.status_url,
                )

            logger.info(f"Waiting {self.poll_interval:g} secs before next status request")
            await self.sleep(self.poll_interval)
