"""Bulk export adapters: kickoff, status polling and NDJSON streaming."""

from labsieve.adapters.bulk.kickoff import ExportJobInitiator
from labsieve.adapters.bulk.ndjson_stream import NDJSONStreamIngester
from labsieve.adapters.bulk.poller import ExportPoller, PollOutcome

__all__ = ["ExportJobInitiator", "NDJSONStreamIngester", "ExportPoller", "PollOutcome"]
