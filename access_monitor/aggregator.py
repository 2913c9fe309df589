"""
Window aggregator.

Every tick drains the intake buffer, keeps the events that pass the current
filter and folds them into four bounded views: the per-tick status-class chart,
the newest-first recent event log, running totals and status-class totals.
The full event history is never retained.
"""

import datetime
import logging
from collections import deque
from typing import Callable, Optional

from .config import CHART_LABEL_FORMAT, CHART_MAX_POINTS, RECENT_EVENTS_MAX
from .filters import StreamFilter, matches
from .intake import IntakeBuffer
from .state import AggregateViews, ChartPoint, RunningTotals, StatusClassTotals

log = logging.getLogger("AccessMonitor.Aggregator")


def _local_now() -> datetime.datetime:
    return datetime.datetime.now().astimezone()


class WindowAggregator:
    def __init__(self, intake: IntakeBuffer, stream_filter: Optional[StreamFilter] = None,
                 chart_max_points: int = CHART_MAX_POINTS, recent_events_max: int = RECENT_EVENTS_MAX,
                 clock: Callable[[], datetime.datetime] = _local_now):
        if chart_max_points < 1 or recent_events_max < 1:
            raise ValueError("chart and event log bounds must be positive")
        self.intake = intake
        self.chart_max_points = chart_max_points
        self.recent_events_max = recent_events_max
        self._clock = clock
        self.stream_filter = stream_filter or StreamFilter()
        self.ticks = 0
        self._reset_aggregates()

    def _reset_aggregates(self):
        self._chart = deque(maxlen=self.chart_max_points)
        self._recent = deque(maxlen=self.recent_events_max)
        self._totals = RunningTotals()
        self._status_totals = StatusClassTotals()
        self._views = AggregateViews()

    def reset(self, stream_filter: Optional[StreamFilter] = None) -> AggregateViews:
        """
        Starts a new filter epoch: zeroes all four aggregates and installs the filter.
        Pending intake is left alone and will be judged by the new filter on the next tick.
        """
        if stream_filter is not None:
            self.stream_filter = stream_filter
        self._reset_aggregates()
        log.debug(f"Aggregates reset for filter {self.stream_filter.to_dict()}")
        return self._views

    def tick(self, now: Optional[datetime.datetime] = None) -> AggregateViews:
        drained = self.intake.drain()
        current_filter = self.stream_filter
        retained = [e for e in drained if matches(e, current_filter)]

        bucket_counts = StatusClassTotals.from_events(retained)
        closed_at = now or self._clock()
        self._chart.append(ChartPoint(
            time=closed_at.strftime(CHART_LABEL_FORMAT),
            timestamp=closed_at,
            count_2xx=bucket_counts.count_2xx,
            count_3xx=bucket_counts.count_3xx,
            count_4xx=bucket_counts.count_4xx,
            count_5xx=bucket_counts.count_5xx,
        ))

        if retained:
            # Arrival order in, newest first out; maxlen evicts from the tail.
            for event in retained:
                self._recent.appendleft(event)
            self._totals = self._totals.plus_events(retained)
            self._status_totals = self._status_totals.plus(bucket_counts)

        self.ticks += 1
        self._views = AggregateViews(
            chart=tuple(self._chart),
            recent_events=tuple(self._recent),
            totals=self._totals,
            status_totals=self._status_totals,
        )
        if drained:
            log.debug(f"Tick {self.ticks}: drained {len(drained)} events, {len(retained)} matched filter")
        return self._views

    def views(self) -> AggregateViews:
        return self._views
