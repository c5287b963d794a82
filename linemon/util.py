from __future__ import annotations

import time


def wall_s() -> float:
    """Wall clock in seconds since the epoch (for timestamps shown to operators)."""
    return time.time()
