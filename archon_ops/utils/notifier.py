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

import shutil
import subprocess
from typing import Optional

from .index import log_message

# Unraid's notify script only knows these importances
_IMPORTANCE = {
    "info": "normal",
    "success": "normal",
    "normal": "normal",
    "warning": "warning",
    "error": "alert",
    "critical": "alert",
}

_LEVEL = {
    "info": "INFO",
    "success": "SUCCESS",
    "normal": "INFO",
    "warning": "WARNING",
    "error": "ERROR",
    "critical": "ERROR",
}


class Notifier:
    """Fire-and-forget operator notifications through the host's notify tool."""

    def __init__(self, enabled: bool = True, command: str = "notify", timeout: int = 15):
        self.enabled = enabled
        self.command = command
        self.timeout = timeout

    def _binary(self) -> Optional[str]:
        return shutil.which(self.command)

    def send(self, subject: str, message: str, severity: str = "info") -> bool:
        """
        Log the message and deliver it to the notification channel.

        Delivery failures are logged and never raised.
        """
        severity = severity.lower()
        log_message(f"{subject}: {message}", _LEVEL.get(severity, "INFO"))
        if not self.enabled:
            return False

        binary = self._binary()
        if not binary:
            log_message(f"Notification tool '{self.command}' not found, skipping delivery", "DEBUG")
            return False

        try:
            result = subprocess.run(
                [binary, "-s", subject, "-d", message, "-i", _IMPORTANCE.get(severity, "normal")],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log_message(f"Failed to send notification '{subject}': {e}", "WARNING")
            return False

        if result.returncode != 0:
            log_message(f"Notification '{subject}' rejected: {result.stderr.strip()}", "WARNING")
            return False
        return True
