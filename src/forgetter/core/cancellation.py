"""Cooperative cancellation for erasure runs.

A termination signal never interrupts a relational transaction or an HTTP
call already in flight. It only sets a token that the run checks before the
relational stage, before each chunk, and before each external batch is
admitted.
"""

import asyncio
import signal
from collections.abc import Callable

from forgetter.core.exceptions import CancellationRequested
from forgetter.core.logging import get_logger

logger = get_logger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """Flag shared between the signal handlers and the run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """What requested cancellation, if anything."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Only the first reason is kept."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self, stage: str) -> None:
        """Raise CancellationRequested if cancellation was requested.

        Args:
            stage: Name of the checkpoint, reported in the exception

        Raises:
            CancellationRequested: If the token is set
        """
        if self._event.is_set():
            raise CancellationRequested(stage, reason=self._reason)

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()


def install_signal_handlers(
    token: CancellationToken,
    loop: asyncio.AbstractEventLoop | None = None,
) -> Callable[[], None]:
    """Route SIGINT/SIGTERM to the token.

    Args:
        token: Token to set when a signal arrives
        loop: Event loop to register with (default: the running loop)

    Returns:
        Callable that removes the handlers again
    """
    loop = loop or asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _on_signal(sig: signal.Signals) -> None:
        logger.warning("termination_signal_received", signal=sig.name)
        token.cancel(reason=sig.name)

    for sig in HANDLED_SIGNALS:
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal support
            continue
        installed.append(sig)

    def _remove() -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return _remove
