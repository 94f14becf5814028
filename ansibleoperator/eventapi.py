"""HTTP receiver on a unix socket for events posted by ansible-runner."""

from __future__ import annotations

import json
import logging
import os
import queue
import socketserver
import threading
from collections import deque
from contextlib import suppress
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from typing import Any, Iterator
from urllib.parse import urlsplit

from ansibleoperator.events import JobEvent

_log = logging.getLogger(__name__)


class _ChannelClosed(Exception):
    """Raised when sending on a closed event channel."""


class _EventChannel:
    """A bounded, closable queue of job events."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: deque[JobEvent] = deque()
        self._closed = False
        self._cond = threading.Condition()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def put(self, item: JobEvent, timeout: float | None) -> bool:
        """Queue an item; False if no room came free within the timeout."""
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._closed or len(self._items) < self._capacity, timeout
            )
            if self._closed:
                raise _ChannelClosed
            if not ready:
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    def get(self, timeout: float | None = None) -> JobEvent:
        """Take the next item.

        Raises queue.Empty on timeout and EOFError once closed and drained.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise queue.Empty
            if self._items:
                item = self._items.popleft()
                self._cond.notify_all()
                return item
            raise EOFError("event channel closed")

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[JobEvent]:
        while True:
            try:
                yield self.get()
            except EOFError:
                return


class _RequestHandler(BaseHTTPRequestHandler):
    server: "_UnixHTTPServer"

    def _dispatch(self) -> None:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = 0
        body = self.rfile.read(length) if length > 0 else b""
        status, payload = self.server.receiver.handle_event(
            self.command,
            urlsplit(self.path).path,
            self.headers.get("Content-Type", ""),
            body,
        )
        self.send_response(status)
        self.send_header("Content-Length", str(len(payload)))
        if payload:
            self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.end_headers()
        if payload and self.command != "HEAD":
            self.wfile.write(payload)

    do_GET = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_PATCH = _dispatch
    do_DELETE = _dispatch
    do_HEAD = _dispatch

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        _log.debug(format, *args)


class _UnixHTTPServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True

    def __init__(self, path: str, receiver: "EventReceiver") -> None:
        self.receiver = receiver
        super().__init__(path, _RequestHandler)


class EventReceiver:
    """Serves the event API on a unix socket and queues the received job events.

    ``events`` is iterable and ends once the receiver is closed. ``close`` must
    be called, directly or by using the receiver as a context manager.
    """

    url_path = "/events/"
    queue_size = 1000
    send_timeout = 10.0

    def __init__(self, ident: str, socket_path: str | None = None) -> None:
        self.ident = ident
        self.socket_path = socket_path or f"/tmp/ansibleoperator-{ident}"
        self.events = _EventChannel(self.queue_size)
        self.serve_error: BaseException | None = None
        self._logger = logging.LoggerAdapter(_log, {"job": ident})
        self._closed = False
        self._lock = threading.Lock()
        self._server = _UnixHTTPServer(self.socket_path, self)
        self._thread = threading.Thread(
            target=self._serve, name=f"eventapi-{ident}", daemon=True
        )
        self._thread.start()

    def _serve(self) -> None:
        try:
            self._server.serve_forever(poll_interval=0.1)
        except Exception as exc:  # surfaced to the owner through serve_error
            self.serve_error = exc

    def handle_event(
        self, method: str, path: str, content_type: str | None, body: bytes
    ) -> tuple[int, bytes]:
        """Handle one request and return its status code and response body."""
        if path != self.url_path:
            self._logger.info("Path not found (404): %s", path)
            return HTTPStatus.NOT_FOUND, b"404 page not found\n"

        if method != "POST":
            self._logger.info("Method not allowed (405): %s", method)
            return HTTPStatus.METHOD_NOT_ALLOWED, b""

        content_type = content_type or ""
        if content_type.split(";")[0] != "application/json":
            self._logger.info("Wrong content type (415): %s", content_type)
            return (
                HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
                b'The content-type must be "application/json"',
            )

        try:
            data = json.loads(body)
            event = JobEvent() if data is None else JobEvent.from_dict(data)
        except (ValueError, TypeError) as exc:
            self._logger.info("Could not deserialize body (400): %s", exc)
            return HTTPStatus.BAD_REQUEST, b"Could not deserialize body as JSON"

        if self.events.closed:
            self._logger.info("Stopped and not accepting additional events (410)")
            return HTTPStatus.GONE, b""

        # Status events from ansible-runner carry no uuid and are not of interest.
        if not event.uuid:
            self._logger.debug("Dropping event that is not a JobEvent: %r", body)
            return HTTPStatus.NO_CONTENT, b""

        try:
            delivered = self.events.put(event, self.send_timeout)
        except _ChannelClosed:
            return HTTPStatus.GONE, b""
        if not delivered:
            self._logger.info("Timed out writing event to channel (500)")
            return HTTPStatus.INTERNAL_SERVER_ERROR, b""
        return HTTPStatus.NO_CONTENT, b""

    def close(self) -> None:
        """Stop accepting events, stop the server and remove the socket."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.events.close()
        self._logger.debug("Event API stopped")
        self._server.shutdown()
        self._server.server_close()
        self._thread.join()
        with suppress(FileNotFoundError):
            os.remove(self.socket_path)

    def __enter__(self) -> "EventReceiver":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()