import asyncio
import logging

from .config import HEARTBEAT_INTERVAL_SECONDS
from .state import StreamViews
from .websocket_utils import broadcast_views

log = logging.getLogger("AccessMonitor.Tasks")


async def heartbeat_task(app, interval: float = HEARTBEAT_INTERVAL_SECONDS):
    log.info("Heartbeat task started.")
    controller = app["controller"]
    while True:
        await asyncio.sleep(interval)
        try:
            views = controller.views()
            totals = views.aggregates.totals
            log.info(
                f"[HEARTBEAT] Connection: {views.connection_state.value}, Clients: {len(app['websockets'])}, "
                f"Intake: {len(controller.intake)}, Received: {controller.intake.total_received}, "
                f"Matched: {totals.count}, Errors: {totals.error_count}, "
                f"Filter: {views.stream_filter.to_dict()}"
            )
        except Exception:
            log.error("Error in heartbeat task:", exc_info=True)


def make_views_listener(app):
    """Returns a controller listener that pushes every views update to the websocket clients."""
    def on_views(views: StreamViews):
        if not app["websockets"]:
            return
        task = asyncio.create_task(broadcast_views(list(app["websockets"]), views.to_payload()))
        app["broadcast_tasks"].add(task)
        task.add_done_callback(app["broadcast_tasks"].discard)
    return on_views


async def start_background_tasks(app):
    log.info("Starting background tasks...")
    controller = app["controller"]
    app["views_listener"] = make_views_listener(app)
    controller.add_listener(app["views_listener"])
    app["tasks"] = [asyncio.create_task(heartbeat_task(app))]

    credential = app.get("credential")
    if credential is not None:
        await controller.start_session(credential)
    else:
        log.warning("No credential configured; waiting for a websocket 'login' message.")


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    for task in app.get("tasks", []):
        task.cancel()
    if "tasks" in app:
        await asyncio.gather(*app["tasks"], return_exceptions=True)
    log.info("Asyncio background tasks cancelled.")

    controller = app["controller"]
    if "views_listener" in app:
        controller.remove_listener(app["views_listener"])
    await controller.shutdown()

    pending = list(app.get("broadcast_tasks", ()))
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    for ws in list(app["websockets"]):
        await ws.close()
    log.info("Stream session and websocket clients closed.")
