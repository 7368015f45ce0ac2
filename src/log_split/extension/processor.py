# src/log_split/extension/processor.py
"""InvocationProcessor: per-invocation buffering and flush.

States:
    IDLE -> ACCUMULATING -> FLUSHING -> IDLE

The coordinator calls run_invocation() for every INVOKE event. The processor
drains telemetry from the EventQueue, turns it into CloudWatch-style lines,
picks up routing directives, and on platform.runtimeDone writes the buffer
to the selected log group in a single flush.

Thread Safety:
    Runs exclusively on the coordinator thread. The LogBuffer is never
    shared; only the EventQueue is touched by other threads.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from log_split.common.logging import logger
from log_split.extension.directive import (
    DirectiveParser,
    Malformed,
    NoDirective,
    RoutingDirective,
)
from log_split.extension.errors import SinkFailed
from log_split.extension.events import (
    FunctionLog,
    InitStart,
    Report,
    RuntimeDone,
    Start,
    TelemetryEvent,
)
from log_split.extension.lifecycle import InvokeEvent
from log_split.extension.listener import EventQueue
from log_split.extension.sink import LogEvent, LogSink


class InvocationState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


@dataclass
class LogBuffer:
    """Formatted lines of one invocation plus the group a directive selected."""

    messages: List[str] = field(default_factory=list)
    target_group: Optional[str] = None

    def reset(self) -> None:
        self.messages = []
        self.target_group = None


@dataclass(frozen=True)
class FlushResult:
    request_id: str
    log_group: str
    log_stream: str
    message_count: int
    succeeded: bool
    error: Optional[str] = None


def format_duration(value: float) -> str:
    """Renders a duration the shortest way: 12.3 -> '12.3', 12.0 -> '12'."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def format_init_start(event: InitStart) -> str:
    return (
        f"INIT_START Runtime Version: {event.runtime_version} "
        f"Runtime Version ARN: {event.runtime_version_arn}"
    )


def format_start(event: Start) -> str:
    return f"START RequestId: {event.request_id} Version: {event.version}"


def format_end(event: RuntimeDone) -> str:
    return f"END RequestId: {event.request_id}"


def format_report(event: RuntimeDone, memory_size_mb: int) -> str:
    # No billing data at runtimeDone time, so billed duration mirrors duration
    duration = format_duration(event.duration_ms)
    return (
        f"REPORT RequestId: {event.request_id}\t"
        f"Duration: {duration} ms\t"
        f"Billed Duration: {duration} ms\t"
        f"Memory Size: {memory_size_mb} MB\t"
        f"Max Memory Used: 0 MB"
    )


class InvocationProcessor:
    """
    Buffers one invocation's telemetry and flushes it through the LogSink.

    Purpose:
        Owns the LogBuffer and the per-invocation state machine. Each call to
        run_invocation() handles exactly one invocation and performs at most
        one flush.
    """

    def __init__(
        self,
        events: EventQueue,
        sink: LogSink,
        stream_name: str,
        default_log_group: str,
        memory_size_mb: int = 0,
        parser: Optional[DirectiveParser] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initializes the InvocationProcessor.

        Args:
            events (EventQueue): Queue filled by the TelemetryListener.
            sink (LogSink): Destination writer.
            stream_name (str): Log stream used for every flush of this process.
            default_log_group (str): Group used when no directive was seen.
            memory_size_mb (int): Function memory size for the REPORT line.
            parser (Optional[DirectiveParser]): Directive parser; default marker if omitted.
            clock (Callable[[], float]): Seconds since the epoch, used for flush timestamps.
        """
        if not default_log_group:
            raise ValueError("default_log_group must not be empty")
        self.events = events
        self.sink = sink
        self.stream_name = stream_name
        self.default_log_group = default_log_group
        self.memory_size_mb = memory_size_mb
        self.parser = parser or DirectiveParser()
        self.clock = clock
        self.buffer = LogBuffer()
        self.state = InvocationState.IDLE
        self.request_id = ""

    def begin(self, invoke: InvokeEvent) -> None:
        """IDLE -> ACCUMULATING: starts a fresh buffer for `invoke`."""
        if self.state is not InvocationState.IDLE:
            logger.warning(
                "Starting an invocation while not idle, discarding buffer.",
                extra={"state": self.state.value, "dropped_messages": len(self.buffer.messages)},
            )
        self.buffer.reset()
        self.request_id = invoke.request_id
        self.state = InvocationState.ACCUMULATING
        logger.append_keys(request_id=invoke.request_id)

    def handle(self, event: TelemetryEvent) -> bool:
        """
        Applies one telemetry event to the buffer.

        Returns:
            bool: True when the event completes the invocation (runtimeDone).
        """
        if isinstance(event, InitStart):
            self.buffer.messages.append(format_init_start(event))
        elif isinstance(event, Start):
            self.buffer.messages.append(format_start(event))
        elif isinstance(event, FunctionLog):
            self._handle_function_log(event.text)
        elif isinstance(event, RuntimeDone):
            if event.request_id != self.request_id:
                logger.warning(
                    "runtimeDone for a different request id.",
                    extra={"event_request_id": event.request_id},
                )
            self.buffer.messages.append(format_end(event))
            self.buffer.messages.append(format_report(event, self.memory_size_mb))
            return True
        elif isinstance(event, Report):
            # REPORT is already synthesized from runtimeDone
            logger.debug("Received platform.report.", extra={"report_request_id": event.request_id})
        return False

    def _handle_function_log(self, text: str) -> None:
        match = self.parser.parse(text)
        if isinstance(match, NoDirective):
            self.buffer.messages.append(text)
        elif isinstance(match, Malformed):
            logger.warning("Malformed routing directive, keeping line.", extra={"reason": match.reason})
            self.buffer.messages.append(text)
        elif isinstance(match, RoutingDirective):
            group = match.log_group_name
            if group is None:
                logger.debug("Ignoring directive.", extra={"action": match.action})
                return
            logger.debug("Routing invocation logs.", extra={"log_group": group})
            self.buffer.target_group = group

    def accumulate(self, cancel: Optional[threading.Event] = None) -> None:
        """
        Drains the queue until the invocation's runtimeDone event.

        Raises:
            QueueClosed: If the listener shut down before the invocation ended.
            Cancelled: If the cancellation token fired.
        """
        while True:
            event = self.events.get(cancel)
            if self.handle(event):
                self.state = InvocationState.FLUSHING
                return

    def flush(self) -> FlushResult:
        """
        FLUSHING -> IDLE: writes the buffer in one call to the sink.

        All messages share the flush timestamp; CloudWatch keeps submission
        order within a batch. A SinkFailed is logged and reported in the
        result, never raised.
        """
        group = self.buffer.target_group or self.default_log_group
        timestamp_ms = int(self.clock() * 1000)
        events = [LogEvent(message=m, timestamp_ms=timestamp_ms) for m in self.buffer.messages]

        logger.info("Flushing buffer.", extra={"log_group": group, "count": len(events)})
        try:
            self.sink.put_events(group, self.stream_name, events)
            result = FlushResult(self.request_id, group, self.stream_name, len(events), True)
        except SinkFailed as e:
            logger.error(
                "Failed to flush invocation logs, dropping buffer.",
                extra={"log_group": group, "dropped_messages": len(events), "error": str(e)},
            )
            result = FlushResult(self.request_id, group, self.stream_name, len(events), False, str(e))
        finally:
            self.buffer.reset()
            self.state = InvocationState.IDLE
            logger.remove_keys(["request_id"])
        return result

    def run_invocation(
        self, invoke: InvokeEvent, cancel: Optional[threading.Event] = None
    ) -> FlushResult:
        """
        Runs one full ACCUMULATING -> FLUSHING -> IDLE cycle for `invoke`.

        Raises:
            QueueClosed: If the listener shut down mid-invocation.
            Cancelled: If the cancellation token fired mid-invocation.
        """
        self.begin(invoke)
        try:
            self.accumulate(cancel)
        except Exception:
            logger.warning(
                "Invocation interrupted, discarding buffer.",
                extra={"dropped_messages": len(self.buffer.messages)},
            )
            self.buffer.reset()
            self.state = InvocationState.IDLE
            logger.remove_keys(["request_id"])
            raise
        return self.flush()
