"""Reconnect policy for per-account supervisors."""

import random
import threading

from pydantic import BaseModel
from tenacity import RetryCallState, stop_after_attempt, stop_when_event_set
from tenacity.stop import stop_base

from onebox_common.config import SyncSettings

from onebox_mail.exceptions import SessionConnectError


class RetryPolicy(BaseModel):
    """Delays between session attempts.

    Failed connects wait ``connect_retry_delay``; a session that was up and
    then dropped waits the shorter ``reconnect_delay``. ``max_attempts=None``
    retries until the supervisor is stopped.
    """

    reconnect_delay: float = 5.0
    connect_retry_delay: float = 10.0
    jitter: float = 1.0
    max_attempts: int | None = None

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "RetryPolicy":
        return cls(
            reconnect_delay=settings.reconnect_delay_seconds,
            connect_retry_delay=settings.connect_retry_delay_seconds,
            jitter=settings.retry_jitter_seconds,
            max_attempts=settings.max_attempts,
        )

    def delay_for(self, error: BaseException | None) -> float:
        """Seconds to wait before the next attempt after ``error``."""
        base = (
            self.connect_retry_delay
            if isinstance(error, SessionConnectError)
            else self.reconnect_delay
        )
        return base + (random.uniform(0, self.jitter) if self.jitter > 0 else 0.0)

    def wait(self, retry_state: RetryCallState) -> float:
        """tenacity ``wait`` hook."""
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self.delay_for(error)

    def stop(self, stopping: threading.Event) -> stop_base:
        """tenacity ``stop`` condition: an explicit stop, or the attempt budget."""
        condition: stop_base = stop_when_event_set(stopping)
        if self.max_attempts is not None:
            condition = condition | stop_after_attempt(self.max_attempts)
        return condition
