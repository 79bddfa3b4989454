"""Bulk Export Kickoff.

Requests an asynchronous Group-level bulk export and returns the job whose
status location will be polled. Without a status location the run cannot
proceed, so every failure here is fatal.
"""

import logging
from typing import Optional

import httpx

from labsieve.domain.models import AccessToken, ExportJob
from labsieve.domain.ports import KickoffError
from labsieve.infrastructure.config_manager import ExportConfig

logger = logging.getLogger(__name__)


class ExportJobInitiator:
    """Starts bulk export jobs for the configured cohort.

    Parameters:
        client: Shared async HTTP client
        config: Export configuration (base URL, group id, type selection)
    """

    def __init__(self, client: httpx.AsyncClient, config: ExportConfig):
        self.client = client
        self.config = config

    def build_params(self) -> dict:
        params = {"_type": self.config.export_types}
        if self.config.type_filter:
            params["_typeFilter"] = self.config.type_filter
        return params

    async def start_export(self, token: AccessToken, group_id: Optional[str] = None) -> ExportJob:
        """Kick off an export and return the job in state ``requested``.

        Parameters:
            token: Bearer token
            group_id: Cohort to export (defaults to the configured group)

        Returns:
            ExportJob: Job carrying the Content-Location status URL

        Raises:
            KickoffError: On network failure, non-2xx status or a missing Content-Location
        """
        url = self.config.export_url
        if group_id is not None:
            url = f"{self.config.fhir_base_url}/Group/{group_id}/$export"

        headers = {
            "Accept": "application/fhir+json",
            "Prefer": "respond-async",
            **token.authorization_header(),
        }

        logger.info(f"Starting bulk export: {url} (_type={self.config.export_types})")
        try:
            response = await self.client.get(url, params=self.build_params(), headers=headers)
        except httpx.HTTPError as e:
            raise KickoffError(f"Export endpoint unreachable: {type(e).__name__}: {e}")

        if not response.is_success:
            raise KickoffError(
                f"Export request refused: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        status_url = response.headers.get("Content-Location")
        if not status_url:
            raise KickoffError(
                f"Export accepted with HTTP {response.status_code} but no Content-Location header",
                status_code=response.status_code,
            )

        logger.info(f"Bulk export accepted (HTTP {response.status_code}); status URL: {status_url}")
        return ExportJob(status_url=status_url)
