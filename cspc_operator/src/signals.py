from __future__ import annotations

import logging
import os
import signal
import threading
from types import FrameType

LOGGER = logging.getLogger(__name__)

SHUTDOWN_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)

_setup_lock = threading.Lock()
_setup_done = False


def setup_signal_handler() -> threading.Event:
    """Install SIGINT/SIGTERM handling and return the process stop event.

    The first signal sets the returned event so every long-running component
    can begin a graceful shutdown.  A second signal exits the process
    immediately with status 1.  May only be called once per process.
    """
    global _setup_done
    with _setup_lock:
        if _setup_done:
            raise RuntimeError("signal handler has already been set up")
        _setup_done = True

    stop_event = threading.Event()

    def _handle_signal(signum: int, frame: FrameType | None) -> None:
        if stop_event.is_set():
            LOGGER.error("Received second signal %d, exiting immediately", signum)
            os._exit(1)
        LOGGER.info("Received signal %d, shutting down", signum)
        stop_event.set()

    for signum in SHUTDOWN_SIGNALS:
        signal.signal(signum, _handle_signal)
    return stop_event
