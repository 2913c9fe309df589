from collections import deque
from typing import List

from .events import AccessEvent


class IntakeBuffer:
    """
    Holds events that arrived since the last tick.
    One writer (the transport callback) and one reader (the tick), both on the
    event loop thread. Unbounded on purpose: the recent-event log applies the cap.
    """

    def __init__(self):
        self._events: deque = deque()
        self.total_received = 0

    def push(self, event: AccessEvent):
        self._events.append(event)
        self.total_received += 1

    def drain(self) -> List[AccessEvent]:
        """Returns every pending event in arrival order and empties the buffer."""
        events, self._events = self._events, deque()
        return list(events)

    def clear(self) -> int:
        """Discards pending events, returning how many were dropped."""
        dropped = len(self._events)
        self._events = deque()
        return dropped

    def __len__(self) -> int:
        return len(self._events)
