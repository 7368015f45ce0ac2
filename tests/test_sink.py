# tests/test_sink.py
"""Tests for LogSink against a stubbed CloudWatch Logs client."""

import pytest

from log_split.extension.errors import SinkFailed
from log_split.extension.sink import (
    EVENT_OVERHEAD_BYTES,
    MAX_BATCH_BYTES,
    MAX_BATCH_EVENTS,
    LogEvent,
    LogSink,
    split_batches,
)

GROUP = "/my/group"
STREAM = "2024/01/01/abc"


def put_params(messages, timestamp=1700000000000):
    return {
        "logGroupName": GROUP,
        "logStreamName": STREAM,
        "logEvents": [{"timestamp": timestamp, "message": m} for m in messages],
    }


def to_events(messages, timestamp=1700000000000):
    return [LogEvent(message=m, timestamp_ms=timestamp) for m in messages]


@pytest.fixture
def sink(logs_client) -> LogSink:
    return LogSink(logs_client, max_attempts=3, base_delay=0, max_delay=0)


class TestPutEvents:
    def test_successful_put(self, sink: LogSink, stubber) -> None:
        stubber.add_response("put_log_events", {"nextSequenceToken": "1"}, put_params(["a", "b"]))
        assert sink.put_events(GROUP, STREAM, to_events(["a", "b"])) == 2

    def test_empty_batch_makes_no_call(self, sink: LogSink, stubber) -> None:
        assert sink.put_events(GROUP, STREAM, []) == 0

    def test_missing_destination_is_created_then_retried(self, sink: LogSink, stubber) -> None:
        """Exactly one create-group, one create-stream, one successful retry."""
        stubber.add_client_error(
            "put_log_events",
            service_error_code="ResourceNotFoundException",
            http_status_code=400,
            expected_params=put_params(["a"]),
        )
        stubber.add_response("create_log_group", {}, {"logGroupName": GROUP})
        stubber.add_response("create_log_stream", {}, {"logGroupName": GROUP, "logStreamName": STREAM})
        stubber.add_response("put_log_events", {}, put_params(["a"]))

        assert sink.put_events(GROUP, STREAM, to_events(["a"])) == 1

    def test_already_exists_conflicts_are_ignored(self, sink: LogSink, stubber) -> None:
        stubber.add_client_error("put_log_events", service_error_code="ResourceNotFoundException", http_status_code=400)
        stubber.add_client_error("create_log_group", service_error_code="ResourceAlreadyExistsException", http_status_code=400)
        stubber.add_client_error("create_log_stream", service_error_code="ResourceAlreadyExistsException", http_status_code=400)
        stubber.add_response("put_log_events", {}, put_params(["a"]))

        assert sink.put_events(GROUP, STREAM, to_events(["a"])) == 1

    def test_retries_are_bounded(self, sink: LogSink, stubber) -> None:
        """A destination that never appears ends in SinkFailed after max_attempts puts."""
        for _ in range(2):
            stubber.add_client_error("put_log_events", service_error_code="ResourceNotFoundException", http_status_code=400)
            stubber.add_response("create_log_group", {})
            stubber.add_response("create_log_stream", {})
        stubber.add_client_error("put_log_events", service_error_code="ResourceNotFoundException", http_status_code=400)

        with pytest.raises(SinkFailed) as exc_info:
            sink.put_events(GROUP, STREAM, to_events(["a"]))
        assert exc_info.value.log_group == GROUP
        assert exc_info.value.log_stream == STREAM

    def test_other_errors_are_not_retried(self, sink: LogSink, stubber) -> None:
        stubber.add_client_error("put_log_events", service_error_code="InvalidParameterException", http_status_code=400)

        with pytest.raises(SinkFailed) as exc_info:
            sink.put_events(GROUP, STREAM, to_events(["a"]))
        assert "InvalidParameterException" in str(exc_info.value)

    def test_create_failure_surfaces_as_sink_failed(self, sink: LogSink, stubber) -> None:
        stubber.add_client_error("put_log_events", service_error_code="ResourceNotFoundException", http_status_code=400)
        stubber.add_client_error("create_log_group", service_error_code="AccessDeniedException", http_status_code=400)

        with pytest.raises(SinkFailed):
            sink.put_events(GROUP, STREAM, to_events(["a"]))


class TestSplitBatches:
    def test_small_input_is_one_batch(self) -> None:
        events = to_events(["a", "b", "c"])
        assert list(split_batches(events)) == [events]

    def test_split_by_event_count(self) -> None:
        events = to_events(["x"] * (MAX_BATCH_EVENTS + 5))
        batches = list(split_batches(events))
        assert [len(b) for b in batches] == [MAX_BATCH_EVENTS, 5]
        assert [e for b in batches for e in b] == events

    def test_split_by_bytes(self) -> None:
        size = 200000
        events = to_events(["m" * size] * 6)
        batches = list(split_batches(events))
        per_batch = MAX_BATCH_BYTES // (size + EVENT_OVERHEAD_BYTES)
        assert len(batches[0]) == per_batch
        assert sum(len(b) for b in batches) == 6

    def test_split_batches_are_written_in_order(self, sink: LogSink, stubber) -> None:
        messages = ["m" * 600000, "n" * 600000]
        stubber.add_response("put_log_events", {}, put_params(messages[:1]))
        stubber.add_response("put_log_events", {}, put_params(messages[1:]))
        assert sink.put_events(GROUP, STREAM, to_events(messages)) == 2
