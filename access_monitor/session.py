"""
Stream session controller.

Owns the transport connection for the current credential, the recurring
aggregation tick and filter-epoch transitions. State machine:

    IDLE --start_session--> CONNECTING --open--> CONNECTED
    CONNECTING/CONNECTED --close/error--> DISCONNECTED --open--> CONNECTED
    any --unauthorized--> DISCONNECTED (terminal until a new start_session)
    any --end_session--> IDLE

Retrying after a close is the transport's business; the controller only
mirrors the latest signal. Everything runs on the event loop thread.
"""

import asyncio
import contextlib
import logging
from typing import Callable, List, Optional

from .aggregator import WindowAggregator
from .config import CHART_MAX_POINTS, RECENT_EVENTS_MAX, TICK_INTERVAL_MS
from .credentials import Credential
from .events import AccessEvent
from .filters import StreamFilter
from .intake import IntakeBuffer
from .state import ConnectionState, SessionState, StreamViews
from .transport import Transport, TransportFactory, TransportHandlers

log = logging.getLogger("AccessMonitor.Session")

Listener = Callable[[StreamViews], None]


class StreamSessionController:
    def __init__(self, transport_factory: TransportFactory, stream_filter: Optional[StreamFilter] = None,
                 tick_interval_ms: int = TICK_INTERVAL_MS, chart_max_points: int = CHART_MAX_POINTS,
                 recent_events_max: int = RECENT_EVENTS_MAX):
        if tick_interval_ms <= 0:
            raise ValueError("tick interval must be positive")
        self.transport_factory = transport_factory
        self.tick_interval_ms = tick_interval_ms
        self.intake = IntakeBuffer()
        self.aggregator = WindowAggregator(self.intake, stream_filter,
                                           chart_max_points=chart_max_points,
                                           recent_events_max=recent_events_max)
        self._state = SessionState.IDLE
        self._credential: Optional[Credential] = None
        self._credential_rejected = False
        self._transport: Optional[Transport] = None
        self._transport_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        # Bumped on every start/teardown; callbacks and ticks from an older session are ignored.
        self._generation = 0
        self._accepting = False
        # Serializes start_session/end_session; teardown awaits task shutdown.
        self._lifecycle_lock = asyncio.Lock()
        self._listeners: List[Listener] = []

    # --- Read side ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        return self._state.connection_state

    @property
    def stream_filter(self) -> StreamFilter:
        return self.aggregator.stream_filter

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def credential_rejected(self) -> bool:
        return self._credential_rejected

    def views(self) -> StreamViews:
        return StreamViews(
            session_state=self._state,
            stream_filter=self.aggregator.stream_filter,
            aggregates=self.aggregator.views(),
            credential_rejected=self._credential_rejected,
        )

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def _publish(self):
        views = self.views()
        for listener in list(self._listeners):
            try:
                listener(views)
            except Exception:
                log.error("Error in stream views listener:", exc_info=True)

    def _set_state(self, new_state: SessionState):
        if new_state is self._state:
            return
        log.info(f"Session state: {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._publish()

    # --- Credential lifecycle ---

    async def start_session(self, credential: Credential):
        """Credential became present: open the transport and start ticking."""
        async with self._lifecycle_lock:
            if (credential == self._credential and self._state is not SessionState.IDLE
                    and not self._credential_rejected):
                log.debug("start_session called with the active credential; nothing to do.")
                return
            if self._state is not SessionState.IDLE or self._transport_task or self._tick_task:
                await self._teardown()
            self._open_session(credential)

    def _open_session(self, credential: Credential):
        self._generation += 1
        generation = self._generation
        self._credential = credential
        self._credential_rejected = False
        self.intake.clear()
        self.aggregator.reset()
        self._accepting = True

        handlers = TransportHandlers(
            on_event=lambda event: self._on_event(generation, event),
            on_open=lambda: self._on_open(generation),
            on_close=lambda: self._on_close(generation),
            on_unauthorized=lambda: self._on_unauthorized(generation),
        )
        self._transport = self.transport_factory(credential, handlers)
        log.info(f"Starting stream session for '{credential.username}'")
        self._set_state(SessionState.CONNECTING)
        self._transport_task = asyncio.create_task(self._run_transport(generation, self._transport))
        self._tick_task = asyncio.create_task(self._tick_loop(generation))

    async def end_session(self):
        """Credential became absent: tear everything down and go idle."""
        async with self._lifecycle_lock:
            await self._teardown()
            self._credential = None
            self._credential_rejected = False
            self.aggregator.reset()
            self._set_state(SessionState.IDLE)

    async def shutdown(self):
        log.info("Shutting down stream session controller.")
        await self.end_session()

    def _stop(self) -> List[asyncio.Task]:
        """Synchronous half of teardown: after this returns no tick or event can land."""
        self._generation += 1
        self._accepting = False
        # A transport reporting from inside its own task is left to return on its own.
        current = asyncio.current_task()
        tasks = [t for t in (self._tick_task, self._transport_task) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        if self._transport is not None:
            self._transport.close()
        self._tick_task = None
        self._transport_task = None
        self._transport = None
        dropped = self.intake.clear()
        if dropped:
            log.info(f"Discarded {dropped} buffered events on teardown.")
        return tasks

    async def _teardown(self):
        tasks = self._stop()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- Filter epochs ---

    def set_filter(self, new_filter: StreamFilter) -> bool:
        """
        Installs a new filter. A different value starts a new epoch: all four
        aggregates are zeroed before the next tick aggregates anything.
        The transport subscription is left untouched.
        """
        if new_filter == self.aggregator.stream_filter:
            return False
        log.info(f"Filter changed to {new_filter.to_dict()}; resetting aggregates.")
        self.aggregator.reset(new_filter)
        self._publish()
        return True

    def clear_filter(self) -> bool:
        return self.set_filter(StreamFilter())

    # --- Transport callbacks ---

    def _on_event(self, generation: int, event: AccessEvent):
        if generation != self._generation or not self._accepting:
            return
        self.intake.push(event)

    def _on_open(self, generation: int):
        if generation != self._generation or not self._accepting:
            return
        self._set_state(SessionState.CONNECTED)

    def _on_close(self, generation: int):
        if generation != self._generation or not self._accepting:
            return
        self._set_state(SessionState.DISCONNECTED)

    def _on_unauthorized(self, generation: int):
        if generation != self._generation:
            return
        log.warning("Access stream rejected the credential; session stays disconnected until new credentials arrive.")
        self._credential_rejected = True
        for task in self._stop():
            task.add_done_callback(_consume_task_result)
        if self._state is SessionState.DISCONNECTED:
            self._publish()
        else:
            self._set_state(SessionState.DISCONNECTED)

    # --- Tasks ---

    async def _run_transport(self, generation: int, transport: Transport):
        try:
            await transport.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.error("Transport stopped with an unexpected error:", exc_info=True)
            self._on_close(generation)

    async def _tick_loop(self, generation: int):
        interval = self.tick_interval_ms / 1000
        log.info(f"Aggregation tick started (every {self.tick_interval_ms} ms).")
        while True:
            await asyncio.sleep(interval)
            if generation != self._generation or not self._accepting:
                return
            try:
                self.aggregator.tick()
            except Exception:
                log.error("Error in aggregation tick:", exc_info=True)
                continue
            self._publish()


def _consume_task_result(task: asyncio.Task):
    if not task.cancelled() and task.exception() is not None:
        log.debug(f"Background task ended with {task.exception()!r}")
