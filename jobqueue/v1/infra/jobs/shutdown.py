"""
Explicit cancellation token for long-running loops.
"""

import asyncio
import signal

from jobqueue.config.logging import get_logger

logger = get_logger(__name__)


class ShutdownToken:
    """Set once to ask a loop to stop at its next safe point."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled or ``timeout`` elapses; True if cancelled."""
        if timeout is None:
            await self._event.wait()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


def install_signal_handlers(
    token: ShutdownToken,
    signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
) -> None:
    """Cancel ``token`` on SIGINT/SIGTERM instead of exiting immediately."""
    loop = asyncio.get_running_loop()

    for sig in signals:

        def _handler(sig: signal.Signals = sig) -> None:
            logger.info("jobs.worker.signal", signal=sig.name)
            token.cancel(reason=sig.name)

        try:
            loop.add_signal_handler(sig, _handler)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda *_, _sig=sig: loop.call_soon_threadsafe(_handler, _sig))
