"""Signal handling for a graceful shutdown of ``intern serve``."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
import signal


logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_shutdown_signals(shutdown_event: asyncio.Event | None = None) -> asyncio.Event:
    """Attach SIGINT/SIGTERM handlers that set ``shutdown_event``.

    The first signal begins graceful shutdown; repeated signals are ignored.
    Must be called from the running event loop. Returns the event so the
    service can await it.
    """
    shutdown_event = shutdown_event or asyncio.Event()
    loop = asyncio.get_running_loop()

    def _make_handler(sig: signal.Signals) -> Callable[[], None]:
        def _handler() -> None:  # pragma: no cover - signal glue
            if shutdown_event.is_set():
                return
            logger.info("Received %s, scheduling shutdown", sig.name)
            shutdown_event.set()

        return _handler

    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, _make_handler(sig))
        except (NotImplementedError, RuntimeError, ValueError):  # pragma: no cover - unsupported platform
            logger.debug("Signal %s is not supported in this context", sig.name)

    return shutdown_event


def remove_shutdown_signals() -> None:
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError, ValueError):  # pragma: no cover - unsupported platform
            continue
