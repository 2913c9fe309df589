import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple

from .config import ERROR_STATUS_MIN
from .events import AccessEvent
from .filters import StreamFilter


class ConnectionState(str, Enum):
    """Latest lifecycle signal seen from the transport, as shown to the user."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"

    @property
    def connection_state(self) -> ConnectionState:
        if self is SessionState.IDLE:
            return ConnectionState.DISCONNECTED
        return ConnectionState(self.value)


# --- Aggregate Values ---
# All aggregate values are frozen: the aggregator builds new instances each tick
# and the published views can be handed out without copying.

@dataclass(frozen=True)
class StatusClassTotals:
    count_2xx: int = 0
    count_3xx: int = 0
    count_4xx: int = 0
    count_5xx: int = 0

    @classmethod
    def from_events(cls, events) -> "StatusClassTotals":
        """Counts events per status class; classes outside 2..5 are not counted."""
        counts = {2: 0, 3: 0, 4: 0, 5: 0}
        for event in events:
            cls_digit = event.status_class
            if cls_digit in counts:
                counts[cls_digit] += 1
        return cls(counts[2], counts[3], counts[4], counts[5])

    @property
    def total(self) -> int:
        return self.count_2xx + self.count_3xx + self.count_4xx + self.count_5xx

    def plus(self, other: "StatusClassTotals") -> "StatusClassTotals":
        return StatusClassTotals(
            self.count_2xx + other.count_2xx,
            self.count_3xx + other.count_3xx,
            self.count_4xx + other.count_4xx,
            self.count_5xx + other.count_5xx,
        )

    def to_payload(self) -> Dict[str, int]:
        return {"count_2xx": self.count_2xx, "count_3xx": self.count_3xx,
                "count_4xx": self.count_4xx, "count_5xx": self.count_5xx}


@dataclass(frozen=True)
class RunningTotals:
    count: int = 0
    sum_duration_ms: float = 0.0
    error_count: int = 0

    @property
    def avg_duration_ms(self) -> float:
        return self.sum_duration_ms / self.count if self.count > 0 else 0.0

    @property
    def error_rate(self) -> float:
        """Share of 5xx responses, in percent."""
        return (self.error_count / self.count) * 100 if self.count > 0 else 0.0

    def plus_events(self, events) -> "RunningTotals":
        return RunningTotals(
            count=self.count + len(events),
            sum_duration_ms=self.sum_duration_ms + sum(e.duration_ms for e in events),
            error_count=self.error_count + sum(1 for e in events if e.status_code >= ERROR_STATUS_MIN),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"count": self.count, "sum_duration_ms": round(self.sum_duration_ms, 3),
                "error_count": self.error_count,
                "avg_duration_ms": round(self.avg_duration_ms, 3),
                "error_rate": round(self.error_rate, 3)}


@dataclass(frozen=True)
class ChartPoint:
    """One tick's bucket of the request-rate chart."""
    time: str
    timestamp: datetime.datetime
    count_2xx: int = 0
    count_3xx: int = 0
    count_4xx: int = 0
    count_5xx: int = 0

    @property
    def total(self) -> int:
        return self.count_2xx + self.count_3xx + self.count_4xx + self.count_5xx

    def to_payload(self) -> Dict[str, Any]:
        return {"time": self.time, "timestamp": self.timestamp.isoformat(),
                "count_2xx": self.count_2xx, "count_3xx": self.count_3xx,
                "count_4xx": self.count_4xx, "count_5xx": self.count_5xx}


@dataclass(frozen=True)
class AggregateViews:
    """Read-only snapshot of the four aggregates for one filter epoch."""
    chart: Tuple[ChartPoint, ...] = ()
    recent_events: Tuple[AccessEvent, ...] = ()
    totals: RunningTotals = field(default_factory=RunningTotals)
    status_totals: StatusClassTotals = field(default_factory=StatusClassTotals)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "chart": [p.to_payload() for p in self.chart],
            "recent_events": [e.to_payload() for e in self.recent_events],
            "totals": self.totals.to_payload(),
            "status_totals": self.status_totals.to_payload(),
        }


@dataclass(frozen=True)
class StreamViews:
    """Everything the rendering layer reads: aggregates plus connection and filter."""
    session_state: SessionState = SessionState.IDLE
    stream_filter: StreamFilter = field(default_factory=StreamFilter)
    aggregates: AggregateViews = field(default_factory=AggregateViews)
    credential_rejected: bool = False

    @property
    def connection_state(self) -> ConnectionState:
        return self.session_state.connection_state

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "stream_update",
            "connection": self.connection_state.value,
            "session": self.session_state.value,
            "credential_rejected": self.credential_rejected,
            "filter": self.stream_filter.to_dict(),
            "has_filter": not self.stream_filter.is_empty,
            **self.aggregates.to_payload(),
        }
