"""
MODULE: TELEMETRY_LOG
DESCRIPTION:
    Bounded FIFO of recorded snapshots. Oldest frames fall off first.

    The tick loop is the only writer. Readers (optimizer, advisor, recorder)
    always work on snapshot() copies, never on the live buffer.
"""

from collections import deque
from typing import Deque, List

from unimix.core.models import Telemetry


class TelemetryLog:
    def __init__(self, capacity: int = 2000):
        if capacity < 1:
            raise ValueError(f"Telemetry log capacity must be >= 1, got {capacity}")
        self._buffer: Deque[Telemetry] = deque(maxlen=int(capacity))

    @property
    def capacity(self) -> int:
        return self._buffer.maxlen

    def append(self, frame: Telemetry):
        self._buffer.append(frame)

    def snapshot(self) -> List[Telemetry]:
        return list(self._buffer)

    def latest(self, count: int) -> List[Telemetry]:
        if count <= 0:
            return []
        return list(self._buffer)[-count:]

    def clear(self):
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)
