"""Signal handling for graceful shutdown."""

import asyncio
import logging
import signal
import sys
from collections.abc import Callable

logger = logging.getLogger(__name__)


def setup_shutdown_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    callback: Callable[[], None],
) -> None:
    """Register SIGTERM/SIGINT handlers.

    First signal: invoke callback so the driver finishes its in-flight
    commit and drains the buffer.
    Second signal: cancel every task for an immediate exit.

    On Windows add_signal_handler() is unavailable and signal.signal() is
    used instead, without the forced second-signal exit.
    """
    received = {"count": 0}

    def handle_signal(sig: signal.Signals) -> None:
        received["count"] += 1
        if received["count"] == 1:
            logger.info(
                "Received signal, initiating graceful shutdown",
                extra={"operation": "shutdown", "state": sig.name},
            )
            callback()
            return
        logger.warning("Received second signal, forcing immediate shutdown...")
        for task in asyncio.all_tasks(loop):
            task.cancel()

    if sys.platform == "win32":
        def _handler(signum, frame):
            logger.info("Received signal %s, initiating shutdown", signum)
            callback()

        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
