"""
Status polling helpers shared by the audit tracker and the PDF job manager.

``StatusPoller`` turns a remote (or stored) job into a sequence of
``poll_once`` calls spaced with exponential backoff plus jitter, bounded by a
total wait. ``retry_async`` wraps a single call that may fail transiently.
"""
import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple, Type

from app.platform.logger import get_logger

logger = get_logger(__name__)


@dataclass
class PollResult:
    done: bool
    value: Any = None
    error: Optional[str] = None


@dataclass
class PollOutcome:
    done: bool
    value: Any = None
    error: Optional[str] = None
    attempts: int = 0
    elapsed: float = 0.0
    timed_out: bool = False


class StatusPoller:
    def __init__(
        self,
        min_interval: float = 2.0,
        max_interval: float = 30.0,
        max_wait: float = 1800.0,
        multiplier: float = 2.0,
        jitter: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        if min_interval <= 0 or max_interval < min_interval:
            raise ValueError("interval bounds must satisfy 0 < min_interval <= max_interval")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.max_wait = max_wait
        self.multiplier = multiplier
        self.jitter = jitter
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    def base_delay(self, attempt: int) -> float:
        """Delay before poll number ``attempt + 1`` without jitter."""
        return min(self.max_interval, self.min_interval * (self.multiplier ** attempt))

    def delays(self) -> Iterator[float]:
        """
        Jittered delays around ``base_delay``.

        Jitter is applied after the cap so pollers sitting at
        ``max_interval`` still spread out; only the floor is enforced.
        """
        floor = self.min_interval * (1 - self.jitter)
        attempt = 0
        while True:
            base = self.base_delay(attempt)
            delay = self._rng.uniform(base * (1 - self.jitter), base * (1 + self.jitter))
            yield max(floor, delay)
            attempt += 1

    async def run(self, poll_once: Callable[[], Awaitable[PollResult]]) -> PollOutcome:
        started = self._clock()
        attempts = 0
        last = PollResult(done=False)

        for delay in self.delays():
            attempts += 1
            last = await poll_once()
            elapsed = self._clock() - started
            if last.done:
                return PollOutcome(
                    done=True,
                    value=last.value,
                    error=last.error,
                    attempts=attempts,
                    elapsed=elapsed,
                )

            remaining = self.max_wait - elapsed
            if remaining <= 0:
                break
            await self._sleep(min(delay, remaining))
            if self._clock() - started >= self.max_wait:
                # One last look at the deadline so a job finishing during the
                # final sleep is not reported as timed out.
                attempts += 1
                last = await poll_once()
                if last.done:
                    return PollOutcome(
                        done=True,
                        value=last.value,
                        error=last.error,
                        attempts=attempts,
                        elapsed=self._clock() - started,
                    )
                break

        elapsed = self._clock() - started
        logger.warning(f"Polling gave up after {attempts} attempts ({elapsed:.1f}s)")
        return PollOutcome(
            done=False,
            value=last.value,
            error=last.error,
            attempts=attempts,
            elapsed=elapsed,
            timed_out=True,
        )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    attempts: int = 3,
    base_delay: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> Any:
    """Call ``func`` up to ``attempts`` times, backing off 2x (jittered) between tries."""
    rng = rng or random.Random()
    attempt = 1
    while True:
        try:
            return await func()
        except retry_on as exc:
            if attempt >= max(attempts, 1):
                raise
            delay = base_delay * (2 ** (attempt - 1)) * rng.uniform(0.5, 1.5)
            logger.warning(f"Attempt {attempt}/{attempts} failed ({exc}); retrying in {delay:.1f}s")
            await sleep(delay)
            attempt += 1
