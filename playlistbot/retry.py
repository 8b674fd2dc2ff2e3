import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

from .errors import DeadlineExceeded
from .logs import log

T = TypeVar("T")


def sleep_for(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


class Deadline:
    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(self._expires_at - self._clock(), 0.0)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def ensure_sleep_budget(self, sleep_s: float, phase: str) -> None:
        remaining = self.remaining()
        if remaining is None:
            return
        if sleep_s >= remaining:
            log(
                "warning",
                "Not enough time left for retry budget; aborting",
                phase=phase,
                sleep_s=round(sleep_s, 2),
                remaining_s=round(remaining, 2),
            )
            raise DeadlineExceeded(
                "deadline_exceeded",
                {"phase": phase, "sleep_s": sleep_s, "remaining_s": remaining},
            )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0

    def delays(self) -> Iterator[float]:
        """Delay before each retry; one fewer than ``max_attempts``."""
        delay = self.base_delay
        for _ in range(max(self.max_attempts - 1, 0)):
            yield delay
            delay *= self.multiplier

    def run(
        self,
        attempt_fn: Callable[[int], T],
        sleep: Callable[[float], None] = sleep_for,
        deadline: Optional[Deadline] = None,
        phase: str = "retry",
    ) -> T:
        delays = self.delays()
        attempt = 1
        while True:
            outcome = attempt_fn(attempt)
            if outcome or attempt >= self.max_attempts:
                return outcome
            delay = next(delays)
            if deadline is not None:
                deadline.ensure_sleep_budget(delay, phase)
            log("warning", f"{phase} failed - retrying", attempt=attempt, sleep_s=delay)
            sleep(delay)
            attempt += 1
