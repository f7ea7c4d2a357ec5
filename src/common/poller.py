from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar


T = TypeVar("T")


@dataclass
class _PollConfig:
    timeout: float
    interval: float
    max_interval: float
    backoff: float


class BoundedPoller:
    """
    Retry an attempt until it succeeds or a deadline passes.

    - `timeout=0` makes exactly one attempt.
    - Between attempts sleeps `interval`, growing by `backoff` up to
      `max_interval`, never past the deadline.
    - Only exceptions listed in `retry_on` are retried; the last one is
      re-raised once the deadline is reached.

    Used for lock acquisition only. Nothing else in the backend retries.
    """

    def __init__(
        self,
        timeout: float,
        interval: float = 1.0,
        *,
        max_interval: float = 10.0,
        backoff: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if timeout < 0:
            raise ValueError("timeout must be >= 0")
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")
        self._cfg = _PollConfig(
            timeout=timeout,
            interval=interval,
            max_interval=max(max_interval, interval),
            backoff=backoff,
        )
        self._clock = clock
        self._sleep = sleep

    def run(
        self,
        attempt: Callable[[], T],
        *,
        retry_on: Tuple[Type[BaseException], ...],
        on_retry: Callable[[BaseException, float], None] | None = None,
    ) -> T:
        deadline = self._clock() + self._cfg.timeout
        delay = self._cfg.interval
        while True:
            try:
                return attempt()
            except retry_on as exc:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise
                wait = min(delay, remaining)
                if on_retry is not None:
                    on_retry(exc, wait)
                self._sleep(wait)
                delay = min(delay * self._cfg.backoff, self._cfg.max_interval)
