# src/log_split/extension/listener.py
"""Local HTTP endpoint receiving Telemetry API batches.

The platform POSTs JSON arrays of envelopes to the listener. Recognized events
are pushed, in order, onto a bounded EventQueue that the InvocationProcessor
drains from the coordinator thread.

Thread Safety:
    The Starlette app is served by uvicorn on its own event loop in a daemon
    thread. Pushing onto the EventQueue may block, so dispatch() runs in the
    threadpool and never stalls the loop. EventQueue is the only state shared
    with the coordinator. shutdown() may be called concurrently from the
    coordinator and from the server thread itself.
"""

import asyncio
import contextlib
import json
import queue
import socket
import threading
import time
from typing import Optional

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from log_split.common.logging import logger
from log_split.extension.errors import Cancelled, EnvelopeDecodeError, QueueClosed
from log_split.extension.events import Ignored, TelemetryEvent, decode_envelope

STARTUP_TIMEOUT_SECONDS = 5.0


class EventQueue:
    """Bounded FIFO of telemetry events with blocking put/get and close support.

    put() blocks while the queue is full, so a slow consumer pushes back on
    the Telemetry API instead of losing data. Waits wake up every
    poll_interval seconds to observe close() and the cancellation token.
    """

    def __init__(self, maxsize: int = 1000, poll_interval: float = 0.1) -> None:
        self._queue: "queue.Queue[TelemetryEvent]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._poll_interval = poll_interval

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    def put(self, event: TelemetryEvent) -> None:
        """Blocks until the event is queued.

        Raises:
            QueueClosed: If the queue is closed before space frees up.
        """
        while not self._closed.is_set():
            try:
                self._queue.put(event, timeout=self._poll_interval)
                return
            except queue.Full:
                continue
        raise QueueClosed("Event queue is closed.")

    def get(self, cancel: Optional[threading.Event] = None) -> TelemetryEvent:
        """Blocks until an event is available.

        Events queued before close() are still returned.

        Raises:
            QueueClosed: If the queue is closed and drained.
            Cancelled: If the cancellation token fires while waiting.
        """
        while True:
            try:
                return self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._closed.is_set():
                    raise QueueClosed("Event queue is closed.") from None
                if cancel is not None and cancel.is_set():
                    raise Cancelled("Cancelled while waiting for telemetry.") from None

    def close(self) -> None:
        """Closes the queue. Idempotent."""
        self._closed.set()


class TelemetryListener:
    """
    Receives Telemetry API batches and feeds the EventQueue.

    Purpose:
        Binds the local HTTP endpoint the Telemetry API subscription points
        at, classifies every envelope and pushes recognized events onto the
        queue in arrival order.
    """

    def __init__(
        self,
        events: EventQueue,
        host: str = "sandbox",
        port: int = 4323,
        grace_period: float = 1.0,
    ):
        """
        Initializes the TelemetryListener.

        Args:
            events (EventQueue): The queue shared with the InvocationProcessor.
            host (str): Host name to bind and advertise. Lambda resolves 'sandbox'.
            port (int): TCP port to bind; 0 picks a free one.
            grace_period (float): Seconds shutdown() waits for in-flight requests.
        """
        self.events = events
        self.host = host
        self.port = port
        self.grace_period = grace_period
        self.app = Starlette(routes=[Route("/", self._receive, methods=["POST"])])
        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_lock = threading.Lock()
        self._stopped = False
        self._inflight = 0
        self._inflight_cond = threading.Condition()

    @property
    def address(self) -> str:
        if self._socket is None:
            raise RuntimeError("Listener is not started.")
        port = self._socket.getsockname()[1]
        return f"http://{self.host}:{port}/"

    def start(self) -> str:
        """
        Binds the endpoint and starts serving on a background thread.

        Returns:
            str: The listener URI to hand to the Telemetry API subscription.

        Raises:
            OSError: If the port cannot be bound or the server does not come up.
        """
        # Bound here so a busy port fails start() instead of the server thread
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        self._socket = sock

        config = uvicorn.Config(
            app=self.app,
            log_level="warning",
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._serve, name="telemetry-listener", daemon=True
        )
        self._thread.start()

        deadline = time.monotonic() + STARTUP_TIMEOUT_SECONDS
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                raise OSError("Telemetry listener did not start.")
            time.sleep(0.01)

        logger.info("Telemetry listener started.", extra={"address": self.address})
        return self.address

    def _serve(self) -> None:
        server = self._server
        try:
            asyncio.run(server.serve(sockets=[self._socket]))
        except Exception as e:
            logger.error(f"Unexpected stop of the telemetry listener: {e}")
            self.shutdown()
        else:
            logger.info("Telemetry listener closed.")

    async def _receive(self, request: Request) -> Response:
        self._request_started()
        try:
            body = await request.body()
            try:
                batch = json.loads(body)
            except ValueError as e:
                logger.error(f"Telemetry batch is not valid JSON: {e}")
                return Response(status_code=400)
            if not isinstance(batch, list):
                logger.error("Telemetry batch is not a JSON array.")
                return Response(status_code=400)

            try:
                await run_in_threadpool(self.dispatch, batch)
            except QueueClosed:
                logger.warning("Event queue closed while receiving telemetry.")
                return Response(status_code=503)
            return Response(status_code=200)
        finally:
            self._request_finished()

    def dispatch(self, batch: list) -> int:
        """
        Classifies every envelope of a batch and queues recognized events.

        A malformed envelope is logged and skipped; the rest of the batch is
        still processed.

        Returns:
            int: The number of events pushed onto the queue.

        Raises:
            QueueClosed: If the queue closes while pushing.
        """
        queued = 0
        for envelope in batch:
            try:
                event = decode_envelope(envelope)
            except EnvelopeDecodeError as e:
                logger.error(f"Dropping malformed telemetry envelope: {e}")
                continue

            if isinstance(event, Ignored):
                if not event.known:
                    logger.warning(
                        "Unknown telemetry event type.",
                        extra={"type": event.type, "record": envelope.get("record")},
                    )
                continue

            self.events.put(event)
            queued += 1
        return queued

    def _request_started(self) -> None:
        with self._inflight_cond:
            self._inflight += 1

    def _request_finished(self) -> None:
        with self._inflight_cond:
            self._inflight -= 1
            self._inflight_cond.notify_all()

    def shutdown(self) -> None:
        """
        Stops the listener and closes the queue. Idempotent.

        New connections are refused first, in-flight requests get up to
        grace_period seconds to finish, then the queue is closed, which also
        releases any handler still blocked on a full queue.
        """
        with self._shutdown_lock:
            if self._stopped:
                return
            self._stopped = True

        server = self._server
        if server is not None:
            server.should_exit = True
            with self._inflight_cond:
                finished = self._inflight_cond.wait_for(
                    lambda: self._inflight == 0, timeout=self.grace_period
                )
            if not finished:
                logger.warning(
                    "Telemetry listener shut down with requests still in flight.",
                    extra={"inflight": self._inflight},
                )

        self.events.close()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(self.grace_period + STARTUP_TIMEOUT_SECONDS)
            if thread.is_alive():
                server.force_exit = True
        if self._socket is not None:
            with contextlib.suppress(OSError):
                self._socket.close()
        logger.info("Telemetry listener shut down.")
