import time


class SystemClock:
    """Wall clock and monotonic clock readers, both in milliseconds."""

    def wall_millis(self) -> int:
        return time.time_ns() // 1_000_000

    def monotonic_millis(self) -> int:
        return time.monotonic_ns() // 1_000_000
