import asyncio

import pytest

from access_monitor.credentials import Credential
from access_monitor.filters import StreamFilter
from access_monitor.session import StreamSessionController
from access_monitor.state import ConnectionState, SessionState
from access_monitor.transport import Transport

from conftest import wait_for


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_starts_idle(self, controller):
        assert controller.state is SessionState.IDLE
        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert controller.credential is None

    @pytest.mark.asyncio
    async def test_start_session_connects(self, controller, transport_factory, credential):
        await controller.start_session(credential)

        assert controller.state is SessionState.CONNECTING
        assert controller.credential == credential
        assert transport_factory.last.credential == credential
        await asyncio.wait_for(transport_factory.last.started.wait(), 1)

    @pytest.mark.asyncio
    async def test_open_and_close_signals_are_mirrored(self, controller, transport_factory, credential):
        await controller.start_session(credential)
        handlers = transport_factory.last.handlers

        handlers.on_open()
        assert controller.connection_state is ConnectionState.CONNECTED

        handlers.on_close()
        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert controller.credential == credential

        # The transport reconnected on its own.
        handlers.on_open()
        assert controller.connection_state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_end_session_tears_down(self, controller, transport_factory, credential, make_event):
        await controller.start_session(credential)
        transport = transport_factory.last
        transport.handlers.on_open()
        transport.handlers.on_event(make_event())
        controller.aggregator.tick()
        transport.handlers.on_event(make_event())

        await controller.end_session()

        assert controller.state is SessionState.IDLE
        assert controller.credential is None
        assert transport.closed
        assert len(controller.intake) == 0
        aggregates = controller.views().aggregates
        assert aggregates.chart == ()
        assert aggregates.recent_events == ()
        assert aggregates.totals.count == 0
        assert aggregates.status_totals.total == 0
        transport.handlers.on_event(make_event())
        transport.handlers.on_open()
        assert len(controller.intake) == 0
        assert controller.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_logout_racing_login_leaves_one_consistent_session(self, controller, transport_factory,
                                                                     credential, make_event):
        await controller.start_session(credential)

        await asyncio.gather(controller.end_session(), controller.start_session(Credential("other", "pw")))

        second = transport_factory.last
        assert controller.state is SessionState.CONNECTING
        assert controller.credential == Credential("other", "pw")
        assert not second.closed
        second.handlers.on_open()
        second.handlers.on_event(make_event())
        assert controller.state is SessionState.CONNECTED
        assert len(controller.intake) == 1

        await controller.shutdown()
        assert all(t.closed for t in transport_factory.created)

    @pytest.mark.asyncio
    async def test_login_racing_logout_ends_idle(self, controller, transport_factory, credential, make_event):
        await controller.start_session(credential)

        await asyncio.gather(controller.start_session(Credential("other", "pw")), controller.end_session())

        assert controller.state is SessionState.IDLE
        assert controller.credential is None
        assert all(t.closed for t in transport_factory.created)
        transport_factory.last.handlers.on_open()
        transport_factory.last.handlers.on_event(make_event())
        assert controller.state is SessionState.IDLE
        assert len(controller.intake) == 0

    @pytest.mark.asyncio
    async def test_concurrent_logins_leave_no_orphan_transport(self, controller, transport_factory, credential):
        await controller.start_session(credential)

        await asyncio.gather(controller.start_session(Credential("b", "pw")),
                             controller.start_session(Credential("c", "pw")))

        assert controller.credential == Credential("c", "pw")
        assert [t.closed for t in transport_factory.created] == [True, True, False]

        await controller.shutdown()
        assert [t.credential.username for t in transport_factory.created if not t.closed] == []

    @pytest.mark.asyncio
    async def test_same_credential_does_not_reconnect(self, controller, transport_factory, credential):
        await controller.start_session(credential)
        await controller.start_session(Credential("admin", "secret"))
        assert len(transport_factory.created) == 1

    @pytest.mark.asyncio
    async def test_new_credential_replaces_transport(self, controller, transport_factory, credential, make_event):
        await controller.start_session(credential)
        old = transport_factory.last
        old.handlers.on_open()

        await controller.start_session(Credential("other", "pw"))
        new = transport_factory.last

        assert new is not old
        assert old.closed
        assert controller.state is SessionState.CONNECTING
        old.handlers.on_event(make_event())
        old.handlers.on_open()
        assert len(controller.intake) == 0
        assert controller.state is SessionState.CONNECTING

    @pytest.mark.asyncio
    async def test_rejects_non_positive_tick(self, transport_factory):
        with pytest.raises(ValueError):
            StreamSessionController(transport_factory, tick_interval_ms=0)


class TestUnauthorized:
    @pytest.mark.asyncio
    async def test_unauthorized_is_terminal(self, controller, transport_factory, credential, make_event):
        await controller.start_session(credential)
        transport = transport_factory.last
        transport.handlers.on_open()
        transport.handlers.on_event(make_event())
        transport.handlers.on_event(make_event())

        transport.handlers.on_unauthorized()

        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert controller.credential_rejected
        assert transport.closed
        assert len(controller.intake) == 0

        transport.handlers.on_event(make_event())
        transport.handlers.on_open()
        assert len(controller.intake) == 0
        assert controller.connection_state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_buffered_events_never_aggregated(self, transport_factory, credential, make_event):
        ctrl = StreamSessionController(transport_factory, tick_interval_ms=10)
        try:
            await ctrl.start_session(credential)
            transport_factory.last.handlers.on_event(make_event())
            transport_factory.last.handlers.on_unauthorized()

            await asyncio.sleep(0.05)

            assert ctrl.views().aggregates.totals.count == 0
            assert ctrl.aggregator.ticks == 0
        finally:
            await ctrl.shutdown()

    @pytest.mark.asyncio
    async def test_views_report_rejection(self, controller, transport_factory, credential):
        seen = []
        controller.add_listener(seen.append)
        await controller.start_session(credential)

        transport_factory.last.handlers.on_unauthorized()

        assert seen[-1].credential_rejected
        assert seen[-1].connection_state is ConnectionState.DISCONNECTED
        assert controller.views().to_payload()["credential_rejected"] is True

    @pytest.mark.asyncio
    async def test_rejected_after_close_still_publishes(self, controller, transport_factory, credential):
        seen = []
        await controller.start_session(credential)
        transport_factory.last.handlers.on_close()
        controller.add_listener(seen.append)

        transport_factory.last.handlers.on_unauthorized()

        assert len(seen) == 1
        assert seen[0].credential_rejected

    @pytest.mark.asyncio
    async def test_same_credential_retried_after_rejection(self, controller, transport_factory, credential):
        await controller.start_session(credential)
        transport_factory.last.handlers.on_unauthorized()

        await controller.start_session(credential)

        assert len(transport_factory.created) == 2
        assert not controller.credential_rejected
        assert controller.state is SessionState.CONNECTING


class TestFilterEpochs:
    @pytest.mark.asyncio
    async def test_filter_change_resets_aggregates(self, controller, transport_factory, credential, make_event):
        await controller.start_session(credential)
        transport = transport_factory.last
        transport.handlers.on_open()
        transport.handlers.on_event(make_event(status=500))
        controller.aggregator.tick()
        assert controller.views().aggregates.totals.count == 1

        changed = controller.set_filter(StreamFilter(method="POST"))

        views = controller.views()
        assert changed
        assert views.aggregates.chart == ()
        assert views.aggregates.recent_events == ()
        assert views.aggregates.totals.count == 0
        assert views.aggregates.status_totals.total == 0
        assert views.stream_filter == StreamFilter(method="POST")
        # The subscription survives the filter change.
        assert not transport.closed
        assert controller.connection_state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_same_filter_is_not_a_new_epoch(self, controller, transport_factory, credential, make_event):
        await controller.start_session(credential)
        transport_factory.last.handlers.on_event(make_event())
        controller.aggregator.tick()

        assert controller.set_filter(StreamFilter()) is False
        assert controller.views().aggregates.totals.count == 1

    @pytest.mark.asyncio
    async def test_filter_applies_to_already_buffered_events(self, controller, transport_factory, credential,
                                                             make_event):
        await controller.start_session(credential)
        transport_factory.last.handlers.on_event(make_event(method="GET"))
        transport_factory.last.handlers.on_event(make_event(method="POST"))

        controller.set_filter(StreamFilter(method="POST"))
        views = controller.aggregator.tick()

        assert views.totals.count == 1

    @pytest.mark.asyncio
    async def test_clear_filter(self, controller):
        controller.set_filter(StreamFilter(host="api"))
        assert controller.clear_filter() is True
        assert controller.stream_filter.is_empty
        assert controller.clear_filter() is False

    @pytest.mark.asyncio
    async def test_filter_change_publishes(self, controller):
        seen = []
        controller.add_listener(seen.append)

        controller.set_filter(StreamFilter(path="/api"))

        assert len(seen) == 1
        assert seen[0].stream_filter == StreamFilter(path="/api")


class TestTickLoop:
    @pytest.mark.asyncio
    async def test_ticks_publish_views(self, transport_factory, credential, make_event):
        ctrl = StreamSessionController(transport_factory, tick_interval_ms=10)
        seen = []
        ctrl.add_listener(seen.append)
        try:
            await ctrl.start_session(credential)
            transport_factory.last.handlers.on_open()
            transport_factory.last.handlers.on_event(make_event(status=404))

            await wait_for(lambda: ctrl.views().aggregates.totals.count == 1)

            assert ctrl.views().aggregates.status_totals.count_4xx == 1
            assert any(len(v.aggregates.chart) > 0 for v in seen)
        finally:
            await ctrl.shutdown()

    @pytest.mark.asyncio
    async def test_no_tick_after_teardown(self, transport_factory, credential):
        ctrl = StreamSessionController(transport_factory, tick_interval_ms=10)
        await ctrl.start_session(credential)
        await wait_for(lambda: ctrl.aggregator.ticks >= 1)

        await ctrl.end_session()
        ticks = ctrl.aggregator.ticks
        await asyncio.sleep(0.05)

        assert ctrl.aggregator.ticks == ticks

    @pytest.mark.asyncio
    async def test_ticks_continue_while_disconnected(self, transport_factory, credential):
        ctrl = StreamSessionController(transport_factory, tick_interval_ms=10)
        try:
            await ctrl.start_session(credential)
            transport_factory.last.handlers.on_close()
            await wait_for(lambda: ctrl.aggregator.ticks >= 2)
            assert ctrl.state is SessionState.DISCONNECTED
        finally:
            await ctrl.shutdown()

    @pytest.mark.asyncio
    async def test_tick_error_does_not_stop_loop(self, transport_factory, credential, monkeypatch):
        ctrl = StreamSessionController(transport_factory, tick_interval_ms=10)
        calls = []
        real_tick = ctrl.aggregator.tick

        def flaky_tick(now=None):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return real_tick(now)

        monkeypatch.setattr(ctrl.aggregator, "tick", flaky_tick)
        try:
            await ctrl.start_session(credential)
            await wait_for(lambda: ctrl.aggregator.ticks >= 1)
            assert len(calls) >= 2
        finally:
            await ctrl.shutdown()


class TestListeners:
    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_others(self, controller, credential):
        seen = []

        def broken(views):
            raise RuntimeError("listener failed")

        controller.add_listener(broken)
        controller.add_listener(seen.append)

        await controller.start_session(credential)

        assert seen[-1].session_state is SessionState.CONNECTING

    @pytest.mark.asyncio
    async def test_state_published_only_on_change(self, controller, transport_factory, credential):
        seen = []
        controller.add_listener(seen.append)
        await controller.start_session(credential)
        transport_factory.last.handlers.on_open()
        transport_factory.last.handlers.on_open()

        assert [v.session_state for v in seen] == [SessionState.CONNECTING, SessionState.CONNECTED]

    @pytest.mark.asyncio
    async def test_remove_listener(self, controller):
        seen = []
        controller.add_listener(seen.append)
        controller.remove_listener(seen.append)
        controller.remove_listener(seen.append)

        controller.set_filter(StreamFilter(method="GET"))

        assert seen == []


class _FailingTransport(Transport):
    async def run(self):
        raise RuntimeError("transport exploded")


@pytest.mark.asyncio
async def test_transport_crash_reported_as_disconnected(credential):
    ctrl = StreamSessionController(lambda cred, handlers: _FailingTransport(handlers), tick_interval_ms=60_000)
    try:
        await ctrl.start_session(credential)
        await wait_for(lambda: ctrl.state is SessionState.DISCONNECTED)
        assert not ctrl.credential_rejected
    finally:
        await ctrl.shutdown()
