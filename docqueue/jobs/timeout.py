"""Job-level deadline timer."""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TimeoutMonitor:
    """Fires ``on_timeout(job_id)`` once if the deadline passes before ``cancel()``."""

    def __init__(self, job_id: str, timeout_ms: int, on_timeout: Callable[[str], None]):
        self._job_id = job_id
        self._timeout_ms = timeout_ms
        self._on_timeout = on_timeout
        self._handle: Optional[asyncio.TimerHandle] = None
        self.expired = False

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is not None or self.expired:
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._timeout_ms / 1000, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.expired = True
        logger.warning(
            "Job deadline exceeded job_id=%s timeout_ms=%d", self._job_id, self._timeout_ms
        )
        try:
            self._on_timeout(self._job_id)
        except Exception:
            logger.exception("Timeout handler failed job_id=%s", self._job_id)
