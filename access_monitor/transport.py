"""
Access event transports.

A transport owns one long-lived connection to an event source and reports to
the session controller purely through four callbacks: a parsed event arrived,
the stream opened, the stream closed or failed, or the credential was rejected.
Framing, parsing and reconnection live here; the controller only mirrors the
signals.
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import aiohttp
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import (
    FOLLOW_POLL_SECONDS,
    RECONNECT_INITIAL_SECONDS,
    RECONNECT_MAX_SECONDS,
    STREAM_CONNECT_TIMEOUT,
    STREAM_EVENT_NAME,
)
from .credentials import Credential
from .events import AccessEvent, parse_access_event

log = logging.getLogger("AccessMonitor.Transport")


@dataclass
class TransportHandlers:
    on_event: Callable[[AccessEvent], None]
    on_open: Callable[[], None]
    on_close: Callable[[], None]
    on_unauthorized: Callable[[], None]


class Transport:
    """Base class for event sources. Subclasses implement run()."""

    def __init__(self, handlers: TransportHandlers):
        self.handlers = handlers
        self.dropped_records = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        """Stops the transport; no callbacks fire once run() notices."""
        self._closed = True

    async def run(self):
        raise NotImplementedError

    def deliver(self, raw: Union[str, bytes]) -> bool:
        """Parses one raw record and forwards it. Malformed records are counted and dropped."""
        event = parse_access_event(raw)
        if event is None:
            self.dropped_records += 1
            return False
        self.handlers.on_event(event)
        return True


TransportFactory = Callable[[Optional[Credential], TransportHandlers], Transport]


# --- Server-Sent Events ---

@dataclass
class SseMessage:
    event: str = "message"
    data: str = ""
    id: Optional[str] = None


class SseParser:
    """Incremental text/event-stream parser, fed one line at a time."""

    def __init__(self):
        self._event = ""
        self._data: List[str] = []
        self.last_event_id: Optional[str] = None
        self.retry_ms: Optional[int] = None

    def feed_line(self, line: str) -> Optional[SseMessage]:
        """Consumes a line; returns a message when a blank line completes one."""
        line = line.rstrip("\r\n")
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None  # comment / keep-alive

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self.retry_ms = int(value)
        return None

    def _dispatch(self) -> Optional[SseMessage]:
        if not self._data:
            self._event = ""
            return None
        message = SseMessage(event=self._event or "message", data="\n".join(self._data),
                             id=self.last_event_id)
        self._event = ""
        self._data = []
        return message


class SseTransport(Transport):
    """
    Subscribes to the access stream over HTTP Server-Sent Events.
    HTTP 401 is terminal. Any other failure is reported as a close and retried
    with exponential backoff, reset after every successful open.
    """

    def __init__(self, url: str, credential: Optional[Credential], handlers: TransportHandlers,
                 event_name: str = STREAM_EVENT_NAME,
                 reconnect_initial: float = RECONNECT_INITIAL_SECONDS,
                 reconnect_max: float = RECONNECT_MAX_SECONDS,
                 connect_timeout: float = STREAM_CONNECT_TIMEOUT):
        super().__init__(handlers)
        self.url = url
        self.credential = credential
        self.event_name = event_name
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max
        self.connect_timeout = connect_timeout

    def _headers(self) -> dict:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if self.credential is not None:
            headers["Authorization"] = self.credential.authorization_header()
        return headers

    async def run(self):
        backoff = self.reconnect_initial
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout, sock_read=None)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            while not self.closed:
                try:
                    async with session.get(self.url, headers=self._headers()) as response:
                        if response.status == 401:
                            log.warning(f"Access stream at {self.url} rejected the credential (HTTP 401). Not retrying.")
                            self.close()
                            self.handlers.on_unauthorized()
                            return
                        if response.status != 200:
                            log.warning(f"Access stream at {self.url} answered HTTP {response.status}.")
                            self.handlers.on_close()
                        else:
                            log.info(f"Connected to access stream at {self.url}")
                            backoff = self.reconnect_initial
                            self.handlers.on_open()
                            await self._consume(response)
                            if self.closed:
                                return
                            log.warning(f"Access stream at {self.url} closed by remote end.")
                            self.handlers.on_close()

                except asyncio.CancelledError:
                    log.info(f"Access stream reader for {self.url} cancelled.")
                    raise
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
                    log.error(f"Cannot read access stream at {self.url}: {e}. Retrying in {backoff}s.")
                    self.handlers.on_close()

                if self.closed:
                    break
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.reconnect_max)

    async def _consume(self, response: aiohttp.ClientResponse):
        parser = SseParser()
        async for raw_line in response.content:
            if self.closed:
                break
            message = parser.feed_line(raw_line.decode("utf-8", errors="replace"))
            if message is not None and message.event == self.event_name:
                self.deliver(message.data)


# --- JSON-lines file ---

class FileFollowTransport(Transport):
    """
    Follows a JSON-lines access log, one event object per line.
    A worker thread tails the file using watchdog notifications with a polling
    fallback, survives rotation and truncation, and hands every complete line
    to the event loop with call_soon_threadsafe.
    """

    def __init__(self, path: str, handlers: TransportHandlers, from_start: bool = False,
                 poll_seconds: float = FOLLOW_POLL_SECONDS):
        super().__init__(handlers)
        self.path = path
        self.from_start = from_start
        self.poll_seconds = poll_seconds
        self._shutdown_event = threading.Event()

    def close(self):
        super().close()
        self._shutdown_event.set()

    async def run(self):
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._blocking_follow, loop)
        finally:
            self._shutdown_event.set()

    def _signal(self, loop: asyncio.AbstractEventLoop, callback, *args):
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop already closed, nobody is listening any more.
            self._shutdown_event.set()

    def _deliver_line(self, line: str):
        if not self.closed:
            self.deliver(line)

    def _fire(self, callback):
        if not self.closed:
            callback()

    def _stat(self) -> os.stat_result:
        return os.stat(self.path)

    def _blocking_follow(self, loop: asyncio.AbstractEventLoop):
        log.info(f"Starting event-driven follower for {self.path}")
        file_changed_event = threading.Event()
        directory = os.path.dirname(os.path.abspath(self.path))

        class ChangeHandler(FileSystemEventHandler):
            def on_any_event(self, event):
                file_changed_event.set()

        if not os.path.isdir(directory):
            log.error(f"Cannot follow access log: directory '{directory}' does not exist.")
            self._signal(loop, self._fire, self.handlers.on_close)
            return

        observer = Observer()
        observer.schedule(ChangeHandler(), directory, recursive=False)
        observer.start()

        f = None
        current_inode = None
        seek_to_end = not self.from_start
        is_open = False
        partial = ""
        # (inode, offset) to pick up from after an error forced a reopen of the same file.
        resume = None
        try:
            while not self._shutdown_event.is_set():
                if f is None:
                    try:
                        f = open(self.path, 'r', encoding='utf-8', errors='replace')
                    except FileNotFoundError:
                        self._shutdown_event.wait(self.poll_seconds)
                        continue
                    except OSError as e:
                        log.error(f"Error opening access log '{self.path}': {e}. Retrying in {self.poll_seconds}s.")
                        self._shutdown_event.wait(self.poll_seconds)
                        continue
                    current_inode = os.fstat(f.fileno()).st_ino
                    if resume is not None and resume[0] == current_inode:
                        f.seek(resume[1])
                    else:
                        if seek_to_end:
                            f.seek(0, os.SEEK_END)
                        partial = ""
                    # A rotated-in file is read from its first line.
                    seek_to_end = False
                    resume = None
                    log.info(f"Following access log '{self.path}' with inode {current_inode}")
                    if not is_open:
                        is_open = True
                        self._signal(loop, self._fire, self.handlers.on_open)

                line = f.readline()
                if line:
                    if not line.endswith('\n'):
                        # Writer is mid-line; keep the fragment until the rest shows up.
                        partial += line
                        line = ""
                    else:
                        line, partial = partial + line, ""
                    if line.strip():
                        self._signal(loop, self._deliver_line, line)
                    if line:
                        continue

                file_changed_event.clear()
                file_changed_event.wait(timeout=self.poll_seconds)
                if self._shutdown_event.is_set():
                    break

                try:
                    st = self._stat()
                    if st.st_ino != current_inode:
                        log.warning(f"Log rotation by inode change detected for '{self.path}'. Re-opening.")
                        f.close()
                        f = None
                        continue
                    if f.tell() > st.st_size:
                        log.warning(f"Log truncation detected for '{self.path}'. Seeking to start.")
                        f.seek(0)
                        partial = ""
                except FileNotFoundError:
                    log.warning(f"Access log '{self.path}' disappeared. Will attempt to re-open.")
                    f.close()
                    f = None
                    if is_open:
                        is_open = False
                        self._signal(loop, self._fire, self.handlers.on_close)
                except Exception as e:
                    log.error(f"Error checking access log status for '{self.path}': {e}. Re-opening.", exc_info=True)
                    resume = (current_inode, f.tell())
                    f.close()
                    f = None
                    self._shutdown_event.wait(self.poll_seconds)
        finally:
            observer.stop()
            observer.join()
            if f:
                f.close()
            log.info(f"Follower for {self.path} has stopped.")


def sse_transport_factory(url: str, **options) -> TransportFactory:
    def factory(credential: Optional[Credential], handlers: TransportHandlers) -> Transport:
        return SseTransport(url, credential, handlers, **options)
    return factory


def file_transport_factory(path: str, from_start: bool = False,
                           poll_seconds: float = FOLLOW_POLL_SECONDS) -> TransportFactory:
    # The file source has no notion of identity; the credential only gates the session.
    def factory(credential: Optional[Credential], handlers: TransportHandlers) -> Transport:
        return FileFollowTransport(path, handlers, from_start=from_start, poll_seconds=poll_seconds)
    return factory
