"""Cooperative cancellation for long-running dedup and check runs."""

from __future__ import annotations

import logging
import signal
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import asyncio

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """Thread-safe flag checked by batch loops between records.

    Loops stop at the next record boundary, so a record is never left
    half-processed.
    """

    def __init__(self) -> None:
        """Initialize a token that is not cancelled."""
        self._is_cancelled = threading.Event()
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Request cancellation."""
        with self._lock:
            self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        """Return true once cancellation has been requested."""
        return self._is_cancelled.is_set()

    def reset(self) -> None:
        """Clear a previous cancellation request."""
        with self._lock:
            self._is_cancelled.clear()


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    token: CancellationToken,
) -> None:
    """Cancel `token` on SIGINT or SIGTERM delivered to the event loop."""

    def _request_cancel(signum: signal.Signals) -> None:
        logger.warning("Received %s, stopping after the current record", signum.name)
        token.cancel()

    for signum in HANDLED_SIGNALS:
        loop.add_signal_handler(signum, _request_cancel, signum)
