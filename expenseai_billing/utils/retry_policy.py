import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from expenseai_billing.errors import ProviderUnavailable

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff for outbound provider calls.

    Only ``ProviderUnavailable`` is retried; request errors (4xx) and
    anything else propagate on the first attempt. ``deadline`` caps the
    total time spent including sleeps so a hanging provider can never
    hold a caller indefinitely.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 4.0
    deadline: Optional[float] = 20.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    monotonic: Callable[[], float] = field(default=time.monotonic, repr=False)

    @classmethod
    def from_config(cls, config):
        return cls(
            max_attempts=int(config.get("PROVIDER_MAX_ATTEMPTS", 3)),
            base_delay=float(config.get("PROVIDER_BACKOFF_BASE_SECONDS", 0.5)),
            max_delay=float(config.get("PROVIDER_BACKOFF_MAX_SECONDS", 4.0)),
            deadline=float(config.get("PROVIDER_DEADLINE_SECONDS", 20.0)),
        )

    def delay_for(self, attempt):
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def run(self, operation, description="provider call"):
        started = self.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except ProviderUnavailable as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        f"Giving up on {description}",
                        extra={"attempts": attempt, "error": str(exc)},
                    )
                    raise

                delay = self.delay_for(attempt)
                elapsed = self.monotonic() - started
                if self.deadline is not None and elapsed + delay > self.deadline:
                    logger.error(
                        f"Deadline exceeded for {description}",
                        extra={"attempts": attempt, "elapsed_seconds": round(elapsed, 3)},
                    )
                    raise

                logger.warning(
                    f"Retrying {description}",
                    extra={"attempt": attempt, "delay_seconds": delay, "error": str(exc)},
                )
                self.sleep(delay)
