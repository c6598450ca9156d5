"""
Logging helpers.

Provides a throttled logger so that repetitive diagnostics (data source in
use, provider mode, offerings fetched) are emitted once per interval
instead of on every call.
"""

import logging
import time
from typing import Callable, Dict, Optional


class ThrottledLogger:
    """Wraps a standard logger and rate-limits messages per key.

    A key is logged at most once every ``interval`` seconds. An interval of
    ``None`` means once for the lifetime of the instance.
    """

    def __init__(
        self,
        logger: logging.Logger,
        interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logger
        self.interval = interval
        self._clock = clock
        self._last_emitted: Dict[str, float] = {}

    def should_emit(self, key: str) -> bool:
        """Record an emission for ``key`` if it is due and report whether it was."""
        now = self._clock()
        last = self._last_emitted.get(key)
        if last is not None:
            if self.interval is None or now - last < self.interval:
                return False
        self._last_emitted[key] = now
        return True

    def log(self, level: int, key: str, msg: str, *args) -> bool:
        if not self.should_emit(key):
            return False
        self.logger.log(level, msg, *args)
        return True

    def info(self, key: str, msg: str, *args) -> bool:
        return self.log(logging.INFO, key, msg, *args)

    def warning(self, key: str, msg: str, *args) -> bool:
        return self.log(logging.WARNING, key, msg, *args)

    def reset(self) -> None:
        self._last_emitted.clear()
