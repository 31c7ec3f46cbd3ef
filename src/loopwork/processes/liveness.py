"""Process liveness probing via the null signal."""

from __future__ import annotations

import os


def is_process_alive(pid: int) -> bool:
    """Return True if ``pid`` names an existing process.

    Delivering signal 0 performs the permission and existence checks without
    sending anything. A process owned by another user answers with
    ``PermissionError``: it exists, so it counts as alive. A definite answer
    therefore needs same-user privilege; across privilege boundaries the
    probe cannot tell a live process from a recycled PID.
    """

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
