"""
Health checker — block until a probe reports ready.

Probe-agnostic: anything callable returning a bool works (HTTP 2xx,
``systemctl is-active``, an open port).  A timeout is an answer,
not an error: ``wait_until_ready`` returns False and never raises.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

Probe = Callable[[], bool]


class HealthChecker:
    """Poll a probe at a fixed interval until it passes or time runs out.

    ``clock`` and ``sleep`` are injectable so tests can run the loop
    on a fake timeline.
    """

    def __init__(
        self,
        default_timeout: float = 60.0,
        default_poll_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.default_timeout = default_timeout
        self.default_poll_interval = default_poll_interval
        self._clock = clock
        self._sleep = sleep
        self.last_poll_count = 0

    def wait_until_ready(
        self,
        probe: Probe,
        timeout: float | None = None,
        poll_interval: float | None = None,
        name: str = "",
    ) -> bool:
        """Return True as soon as ``probe()`` is truthy, False on timeout.

        The probe is called at t=0 and then every ``poll_interval``
        seconds; no poll is made once the deadline has passed.  A probe
        that raises counts as "not ready".
        """
        timeout = self.default_timeout if timeout is None else timeout
        interval = self.default_poll_interval if poll_interval is None else poll_interval
        if interval <= 0:
            raise ValueError("poll_interval must be > 0")

        label = name or getattr(probe, "__name__", "probe")
        deadline = self._clock() + timeout
        polls = 0

        while True:
            polls += 1
            if self._poll(probe, label):
                self.last_poll_count = polls
                logger.info("%s ready after %d poll(s)", label, polls)
                return True

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(interval, remaining))
            if self._clock() >= deadline:
                break

        self.last_poll_count = polls
        logger.warning("%s not ready after %.1fs (%d polls)", label, timeout, polls)
        return False

    @staticmethod
    def _poll(probe: Probe, label: str) -> bool:
        try:
            return bool(probe())
        except Exception as e:
            logger.debug("Probe %s raised: %s", label, e)
            return False
