"""Main orchestration for a Lab-Sieve run.

One run authenticates with a signed client assertion, kicks off a bulk export
for the configured cohort, polls until the export completes, streams the
Patient files and then the Observation files, and renders the lab report.
The report is optionally mailed.

Security Impact:
    - The bearer token lives only for the duration of the run
    - Fatal errors name the failing stage without echoing credentials

Architecture:
    - Adapters are built here from configuration value objects
    - A shared httpx.AsyncClient serves every network stage
    - The delay function and HTTP client are injectable for tests
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx

from labsieve.adapters.auth import AssertionBuilder, JWKSKeySource, TokenExchangeClient
from labsieve.adapters.bulk import ExportJobInitiator, ExportPoller, NDJSONStreamIngester
from labsieve.adapters.bulk.poller import Sleeper
from labsieve.adapters.notify import build_subject
from labsieve.domain.guardrails import PollingGuard, PollingGuardConfig
from labsieve.domain.models import ExportJob, NotificationMessage
from labsieve.domain.ports import LabSieveError, NotificationPort, Result, StreamBatchReport
from labsieve.domain.report import LabReport
from labsieve.domain.services import LabReportService
from labsieve.infrastructure.config_manager import ExportConfig, NotificationConfig

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """Everything a caller needs to present the result of a run."""

    job: ExportJob
    report: LabReport
    batches: list[StreamBatchReport] = field(default_factory=list)
    notification: Optional[Result[str]] = None

    @property
    def partial(self) -> bool:
        """True when at least one output file ended early."""
        return any(not b.is_complete() for b in self.batches)


def build_poller(
    client: httpx.AsyncClient,
    config: ExportConfig,
    sleep: Sleeper = asyncio.sleep,
) -> ExportPoller:
    guard = PollingGuard(PollingGuardConfig(max_attempts=config.max_poll_attempts))
    return ExportPoller(client, poll_interval=config.poll_interval_seconds, sleep=sleep, guard=guard)


async def run_pipeline(
    config: ExportConfig,
    client: Optional[httpx.AsyncClient] = None,
    sleep: Sleeper = asyncio.sleep,
    notifier: Optional[NotificationPort] = None,
    notification_config: Optional[NotificationConfig] = None,
    report_title: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> RunOutcome:
    """Execute one full export-and-classify run.

    Parameters:
        config: Export configuration
        client: HTTP client to use (a new one is created and closed when omitted)
        sleep: Delay function between status polls
        notifier: Optional notification sink for the rendered report
        notification_config: Sender, recipients and subject prefix for the notifier
        report_title: Optional heading for the report
        generated_at: Timestamp for the report header (now when omitted)

    Returns:
        RunOutcome: Completed job, report, per-pass batch outcomes and notification result

    Raises:
        LabSieveError: Any fatal stage failure (signing, token exchange, kickoff, polling guard)
    """
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=config.request_timeout_seconds)

    try:
        builder = AssertionBuilder(JWKSKeySource(config.key_store_path, config.key_algorithm))
        token = await TokenExchangeClient(client, config, builder).request_token()

        job = await ExportJobInitiator(client, config).start_export(token)
        job = await build_poller(client, config, sleep).wait_for_completion(job, token)

        service = LabReportService(NDJSONStreamIngester(client), report_title=report_title)
        report, batches = await service.build_report(job.manifest, token, generated_at=generated_at)
    except LabSieveError as e:
        logger.error(f"{e.stage} failed: {e}", extra={"stage": e.stage})
        raise
    finally:
        if owns_client:
            await client.aclose()

    outcome = RunOutcome(job=job, report=report, batches=batches)

    if notifier is not None and notification_config is not None and notification_config.enabled:
        message = NotificationMessage(
            sender=notification_config.sender,
            recipients=notification_config.recipients,
            subject=build_subject(notification_config.subject_prefix),
            body=report.render(),
        )
        outcome.notification = notifier.send(message)

    return outcome
