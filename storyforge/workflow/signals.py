"""
SIGINT/SIGTERM handling for a run.

The first signal sets the stop flag and terminates the running agent; the
engine then unwinds at the next phase boundary with the phase unchanged.
Further signals are ignored until the previous handlers are restored.
"""

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class StopSignal:
    """Stop flag set by the first interrupt."""

    def __init__(self, on_stop: Optional[Callable[[], None]] = None):
        self.event = threading.Event()
        self.on_stop = on_stop
        self.signum: Optional[int] = None

    def handle(self, signum, frame) -> None:
        if self.event.is_set():
            logger.debug(f"Ignoring repeated signal {signum}")
            return
        self.signum = signum
        self.event.set()
        print(f"\nInterrupted ({signal.Signals(signum).name}), stopping after the current phase...")
        if self.on_stop:
            self.on_stop()


@contextmanager
def handle_interrupts(stop: StopSignal):
    """Install the stop handler for SIGINT and SIGTERM for the duration of the block."""
    original_sigint = signal.signal(signal.SIGINT, stop.handle)
    original_sigterm = signal.signal(signal.SIGTERM, stop.handle)
    try:
        yield stop
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
