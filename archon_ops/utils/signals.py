"""
HOMESERVER Archon Operations
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import signal
import threading
from contextlib import contextmanager

from .errors import OperationInterrupted
from .index import log_message

GUARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _in_main_thread() -> bool:
    return threading.current_thread() is threading.main_thread()


@contextmanager
def interruption_guard():
    """Turn SIGINT/SIGTERM into OperationInterrupted inside the block."""
    if not _in_main_thread():
        yield
        return

    def _raise(signum, frame):
        log_message(f"Received signal {signum}", "WARNING")
        raise OperationInterrupted(signum)

    previous = {sig: signal.signal(sig, _raise) for sig in GUARDED_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@contextmanager
def signals_shielded():
    """Ignore SIGINT/SIGTERM while a compensating action runs."""
    if not _in_main_thread():
        yield
        return

    def _ignore(signum, frame):
        log_message(f"Signal {signum} ignored while rollback is in progress", "WARNING")

    previous = {sig: signal.signal(sig, _ignore) for sig in GUARDED_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
