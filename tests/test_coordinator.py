# tests/test_coordinator.py
"""Tests for the Coordinator loop, including a full register-invoke-flush-shutdown run."""

import threading

import requests

from log_split.extension.coordinator import EXIT_FAILURE, EXIT_OK, Coordinator
from log_split.extension.directive import DirectiveParser
from log_split.extension.errors import SinkFailed
from log_split.extension.events import RuntimeDone
from log_split.extension.lifecycle import EXTENSION_IDENTIFIER_HEADER, LifecycleClient
from log_split.extension.listener import TelemetryListener
from log_split.extension.processor import InvocationProcessor
from log_split.extension.sink import LogSink
from log_split.extension.telemetry_api import TelemetryApiClient

from conftest import FakeResponse

STREAM = "2024/01/01/stream"
NOW = 1700000000.0

REGISTERED = FakeResponse(200, {"functionName": "fn"}, {EXTENSION_IDENTIFIER_HEADER: "abc123"})
SHUTDOWN = FakeResponse(200, {"eventType": "SHUTDOWN", "shutdownReason": "spindown"})


def invoke(request_id: str) -> FakeResponse:
    return FakeResponse(200, {"eventType": "INVOKE", "requestId": request_id})


def build(session, events, sink, with_telemetry=True):
    listener = TelemetryListener(events, host="127.0.0.1", port=0, grace_period=0.2)
    processor = InvocationProcessor(
        events,
        sink,
        stream_name=STREAM,
        default_log_group="/aws/lambda/fn",
        memory_size_mb=128,
        parser=DirectiveParser("::marker::"),
        clock=lambda: NOW,
    )
    telemetry_api = TelemetryApiClient(session) if with_telemetry else None
    return Coordinator(LifecycleClient(session, poll_interval=0.01), listener, processor, telemetry_api)


class TestEndToEnd:
    def test_invoke_is_flushed_to_directive_group(
        self, session, fake_http, events, logs_client, stubber, make_envelope
    ) -> None:
        """Registration, one routed invocation, then SHUTDOWN."""
        subscribed = {}
        polls = []

        def on_subscribe(url, kwargs):
            subscribed["uri"] = kwargs["json"]["destination"]["URI"]
            return FakeResponse(200, "OK")

        def on_next(url, kwargs):
            polls.append(kwargs["headers"][EXTENSION_IDENTIFIER_HEADER])
            if len(polls) > 1:
                return SHUTDOWN
            # The platform pushes the invocation's telemetry to the listener
            batch = [
                make_envelope("platform.start", {"requestId": "r1", "version": "$LATEST"}),
                make_envelope("function", "hello"),
                make_envelope(
                    "function",
                    '::marker::{"action":"log.split","properties":{"logGroupName":"/my/group"}}',
                ),
                make_envelope("platform.runtimeDone", {"requestId": "r1", "metrics": {"durationMs": 12.3}}),
            ]
            requests.post(subscribed["uri"], json=batch, timeout=5).raise_for_status()
            return invoke("r1")

        fake_http.on("POST", "/register", REGISTERED)
        fake_http.on("PUT", "/telemetry", on_subscribe)
        fake_http.on("GET", "/event/next", on_next)

        report = (
            "REPORT RequestId: r1\tDuration: 12.3 ms\tBilled Duration: 12.3 ms\t"
            "Memory Size: 128 MB\tMax Memory Used: 0 MB"
        )
        messages = ["START RequestId: r1 Version: $LATEST", "hello", "END RequestId: r1", report]
        stubber.add_response(
            "put_log_events",
            {},
            {
                "logGroupName": "/my/group",
                "logStreamName": STREAM,
                "logEvents": [{"timestamp": int(NOW * 1000), "message": m} for m in messages],
            },
        )

        coordinator = build(session, events, LogSink(logs_client, base_delay=0, max_delay=0))

        assert coordinator.run() == EXIT_OK
        assert session.extension_id == "abc123"
        assert polls == ["abc123", "abc123"]
        assert coordinator.invocations == 1
        assert events.closed


class TestFailures:
    def test_registration_failure_is_fatal(self, session, fake_http, events, recording_sink) -> None:
        fake_http.on("POST", "/register", FakeResponse(500, {}))
        coordinator = build(session, events, recording_sink)

        assert coordinator.run() == EXIT_FAILURE
        assert fake_http.calls_to("/event/next") == []
        assert fake_http.calls_to("/init/error") == []

    def test_subscription_failure_reports_init_error(self, session, fake_http, events, recording_sink) -> None:
        fake_http.on("POST", "/register", REGISTERED)
        fake_http.on("PUT", "/telemetry", FakeResponse(400, {}))
        fake_http.on("POST", "/init/error", FakeResponse(202, {"status": "OK"}))
        coordinator = build(session, events, recording_sink)

        assert coordinator.run() == EXIT_FAILURE
        headers = fake_http.calls_to("/init/error")[0][2]["headers"]
        assert headers["Lambda-Extension-Function-Error-Type"] == "Extension.TelemetrySubscribeFailed"
        assert fake_http.calls_to("/event/next") == []
        assert events.closed

    def test_poll_failure_ends_loop(self, session, fake_http, events, recording_sink) -> None:
        fake_http.on("POST", "/register", REGISTERED)
        fake_http.on("GET", "/event/next", FakeResponse(500, {}))
        fake_http.on("POST", "/exit/error", FakeResponse(202, {"status": "OK"}))
        coordinator = build(session, events, recording_sink, with_telemetry=False)

        assert coordinator.run() == EXIT_FAILURE
        assert len(fake_http.calls_to("/event/next")) == 1
        assert len(fake_http.calls_to("/exit/error")) == 1

    def test_sink_failure_does_not_stop_loop(self, session, fake_http, events, recording_sink) -> None:
        recording_sink.error = SinkFailed("/aws/lambda/fn", STREAM, "denied")
        for request_id in ("r1", "r2"):
            events.put(RuntimeDone(request_id=request_id, duration_ms=1.0))
        fake_http.on("POST", "/register", REGISTERED)
        fake_http.on("GET", "/event/next", invoke("r1"), invoke("r2"), SHUTDOWN)
        coordinator = build(session, events, recording_sink, with_telemetry=False)

        assert coordinator.run() == EXIT_OK
        assert coordinator.invocations == 2
        assert len(recording_sink.calls) == 2


class TestCancellation:
    def test_cancel_while_polling(self, session, fake_http, events, recording_sink) -> None:
        release = threading.Event()

        def block(url, kwargs):
            release.wait(5.0)
            return SHUTDOWN

        fake_http.on("POST", "/register", REGISTERED)
        fake_http.on("GET", "/event/next", block)
        coordinator = build(session, events, recording_sink, with_telemetry=False)
        threading.Timer(0.1, coordinator.cancel).start()

        try:
            assert coordinator.run() == EXIT_OK
        finally:
            release.set()
        assert events.closed

    def test_cancel_during_invocation(self, session, fake_http, events, recording_sink) -> None:
        fake_http.on("POST", "/register", REGISTERED)
        fake_http.on("GET", "/event/next", invoke("r1"))
        coordinator = build(session, events, recording_sink, with_telemetry=False)
        threading.Timer(0.1, coordinator.cancel).start()

        assert coordinator.run() == EXIT_OK
        assert recording_sink.calls == []

    def test_cancel_is_idempotent(self, session, events, recording_sink) -> None:
        coordinator = build(session, events, recording_sink, with_telemetry=False)
        coordinator.cancel()
        coordinator.cancel()
        assert coordinator.cancel_event.is_set()
        assert events.closed
