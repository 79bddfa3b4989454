"""Domain Guardrails - Stop Conditions for Export Polling.

The polling loop retries indefinitely by default: the export job is expected
to complete server-side and the client does not declare it failed. The
PollingGuard lets a caller bound that loop by attempts, by elapsed time on an
injectable clock, or by an arbitrary predicate.

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - The clock is injected so tests can run the loop without real time
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from labsieve.domain.models import ExportJob

logger = logging.getLogger(__name__)


@dataclass
class PollingGuardConfig:
    """Configuration for PollingGuard behavior.

    Attributes:
        max_attempts: Stop after this many status requests (None = unbounded)
        max_elapsed_seconds: Stop once this much clock time has passed (None = unbounded)
    """
    max_attempts: Optional[int] = None
    max_elapsed_seconds: Optional[float] = None

    @property
    def unbounded(self) -> bool:
        return self.max_attempts is None and self.max_elapsed_seconds is None


class PollingGuard:
    """Decides when the polling loop should give up.

    Example Usage:
        ```python
        guard = PollingGuard(PollingGuardConfig(max_attempts=120))
        poller = ExportPoller(client, poll_interval=30, guard=guard)
        job = await poller.wait_for_completion(status_url, token)
        ```
    """

    def __init__(
        self,
        config: Optional[PollingGuardConfig] = None,
        stop_condition: Optional[Callable[[ExportJob], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize PollingGuard.

        Parameters:
            config: Attempt and elapsed-time limits (unbounded if None)
            stop_condition: Extra predicate evaluated after each failed poll
            clock: Monotonic clock returning seconds
        """
        self.config = config or PollingGuardConfig()
        self.stop_condition = stop_condition
        self.clock = clock
        self._started_at: Optional[float] = None

    def start(self) -> None:
        self._started_at = self.clock()

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self.clock() - self._started_at

    def should_stop(self, job: ExportJob) -> bool:
        """Check whether polling ``job`` should stop after its latest attempt."""
        if self.config.max_attempts is not None and job.attempts >= self.config.max_attempts:
            logger.error(f"Polling stopped after {job.attempts} attempts (limit {self.config.max_attempts})")
            return True
        if self.config.max_elapsed_seconds is not None and self.elapsed >= self.config.max_elapsed_seconds:
            logger.error(
                f"Polling stopped after {self.elapsed:.1f}s (limit {self.config.max_elapsed_seconds:.1f}s)"
            )
            return True
        if self.stop_condition is not None and self.stop_condition(job):
            logger.error(f"Polling stopped by stop condition after {job.attempts} attempts")
            return True
        return False

    def get_statistics(self) -> dict:
        return {
            "max_attempts": self.config.max_attempts,
            "max_elapsed_seconds": self.config.max_elapsed_seconds,
            "elapsed_seconds": self.elapsed,
        }
