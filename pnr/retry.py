from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Event
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-count, fixed-interval polling. Tests use ``RetryPolicy(attempts=n, interval_s=0)``."""

    attempts: int = 30
    interval_s: float = 1.0

    def wait_for(
        self,
        check: Callable[[], bool],
        cancel: Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> bool:
        """Call ``check`` until it returns True or the budget runs out.

        Returns False when every attempt failed or ``cancel`` was set.
        """
        for attempt in range(max(1, self.attempts)):
            if cancel is not None and cancel.is_set():
                return False
            if check():
                return True
            if attempt < self.attempts - 1 and self.interval_s > 0:
                if cancel is not None:
                    # Event.wait doubles as an interruptible sleep.
                    if cancel.wait(self.interval_s):
                        return False
                else:
                    sleep(self.interval_s)
        return False


@dataclass(frozen=True)
class RestartPolicy:
    """When a failed graceful reload escalates to a full backend restart.

    ``after_failures=1`` restarts on the first failed reload; higher values tolerate that many
    consecutive transient failures before restarting.
    """

    after_failures: int = 1

    def should_restart(self, consecutive_failures: int) -> bool:
        return consecutive_failures >= max(1, self.after_failures)
