import asyncio
import logging
from typing import Iterable

import aiohttp


log = logging.getLogger("AccessMonitor.WebsocketUtils")


# Raised by a send racing the client's disconnect.
_CLIENT_GONE = (
    ConnectionResetError,
    aiohttp.client_exceptions.ClientConnectionResetError,
    RuntimeError,
)


async def safe_send_json(ws, payload) -> bool:
    """Sends one payload. A client that already went away is a miss (False), never an error."""
    if ws.closed:
        return False
    try:
        await ws.send_json(payload)
    except _CLIENT_GONE as e:
        log.debug(f"Skipped departing websocket client ({type(e).__name__})")
        return False
    except Exception:
        log.warning("Websocket send failed:", exc_info=True)
        return False
    return True


async def broadcast_views(clients: Iterable, payload) -> int:
    """
    Pushes the same views payload to every connected client concurrently.
    Returns the number of clients that received it.
    """
    recipients = list(clients)
    if not recipients:
        return 0

    results = await asyncio.gather(*(safe_send_json(ws, payload) for ws in recipients),
                                   return_exceptions=True)
    delivered = sum(1 for r in results if r is True)
    if delivered < len(results):
        log.debug(f"Broadcast: {delivered}/{len(results)} clients received update")
    return delivered
