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

"""
Bounded retry helper shared by health recovery, restore verification and
HTTP readiness waits.
"""

import time
from typing import Any, Callable, Optional

from tenacity import (
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from .index import log_message


def retry_until(action: Callable[[], Any],
                predicate: Callable[[Any], bool] = bool,
                max_attempts: int = 3,
                backoff: float = 1.0,
                backoff_factor: float = 1.0,
                before_retry: Optional[Callable[[int, Any], None]] = None,
                sleep: Callable[[float], None] = time.sleep,
                description: str = "") -> Any:
    """
    Call action until predicate(result) holds or max_attempts is reached.

    Args:
        action: Zero-argument callable to invoke.
        predicate: Success test applied to each result.
        max_attempts: Upper bound on calls, at least 1.
        backoff: Seconds to wait before the second attempt.
        backoff_factor: Multiplier applied to the wait after each attempt.
        before_retry: Called with (attempt_number, last_result) before waiting.
        sleep: Sleep function, injectable for tests.
        description: Label used in retry log lines.

    Returns:
        The last result of action, whether or not it satisfied predicate.
        Exceptions raised by action propagate immediately.
    """
    if backoff_factor == 1.0:
        wait = wait_fixed(backoff)
    else:
        wait = wait_exponential(multiplier=backoff, exp_base=backoff_factor)

    def _before_sleep(retry_state):
        last = retry_state.outcome.result()
        if description:
            log_message(f"{description}: attempt {retry_state.attempt_number}/{max_attempts} "
                        f"did not succeed, retrying", "WARNING")
        if before_retry is not None:
            before_retry(retry_state.attempt_number, last)

    retryer = Retrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait,
        retry=retry_if_result(lambda result: not predicate(result)),
        before_sleep=_before_sleep,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        sleep=sleep,
    )
    return retryer(action)
