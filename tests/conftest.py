# tests/conftest.py
"""Shared fixtures: fake Extensions/Telemetry API HTTP session, stubbed CloudWatch Logs."""

import json
from typing import Any, Callable, Dict, List, Optional

import boto3
import pytest
import requests
from botocore.stub import Stubber

from log_split.extension.lifecycle import ExtensionSession, Registration
from log_split.extension.listener import EventQueue
from log_split.extension.sink import LogEvent, LogSink

RUNTIME_API = "127.0.0.1:9001"


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}

    @property
    def text(self) -> str:
        if self._body is None:
            return ""
        return self._body if isinstance(self._body, str) else json.dumps(self._body)

    def json(self) -> Any:
        if isinstance(self._body, str):
            return json.loads(self._body)
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)


class FakeHttp:
    """Routes calls by (method, path suffix) to queued responses or callables.

    Each route holds a list; responses are consumed in order and the last one
    repeats. A route entry may be a callable taking (url, kwargs).
    """

    def __init__(self) -> None:
        self.routes: Dict[tuple, List[Any]] = {}
        self.calls: List[tuple] = []

    def on(self, method: str, suffix: str, *responses: Any) -> "FakeHttp":
        self.routes[(method, suffix)] = list(responses)
        return self

    def _dispatch(self, method: str, url: str, **kwargs: Any) -> Any:
        self.calls.append((method, url, kwargs))
        for (route_method, suffix), responses in self.routes.items():
            if route_method == method and url.endswith(suffix):
                entry = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(entry, BaseException):
                    raise entry
                if callable(entry):
                    return entry(url, kwargs)
                return entry
        raise AssertionError(f"Unexpected {method} {url}")

    def get(self, url: str, **kwargs: Any) -> Any:
        return self._dispatch("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> Any:
        return self._dispatch("POST", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> Any:
        return self._dispatch("PUT", url, **kwargs)

    def calls_to(self, suffix: str) -> List[tuple]:
        return [call for call in self.calls if call[1].endswith(suffix)]


@pytest.fixture
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def session(fake_http: FakeHttp) -> ExtensionSession:
    return ExtensionSession(runtime_api=RUNTIME_API, extension_name="log-split-extension", http=fake_http)


@pytest.fixture
def registered_session(session: ExtensionSession) -> ExtensionSession:
    session.registration = Registration(extension_id="abc123")
    return session


@pytest.fixture
def events() -> EventQueue:
    return EventQueue(maxsize=100, poll_interval=0.01)


@pytest.fixture
def logs_client() -> Any:
    return boto3.client(
        "logs",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def stubber(logs_client: Any):
    with Stubber(logs_client) as stub:
        yield stub
        stub.assert_no_pending_responses()


class RecordingSink(LogSink):
    """LogSink double that records batches or raises a configured error."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        super().__init__(client=None)
        self.error = error
        self.calls: List[tuple] = []

    def put_events(self, group: str, stream: str, events: List[LogEvent]) -> int:
        self.calls.append((group, stream, list(events)))
        if self.error is not None:
            raise self.error
        return len(events)


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


def envelope(event_type: str, record: Any, time: str = "2024-01-01T00:00:00.000Z") -> Dict[str, Any]:
    return {"time": time, "type": event_type, "record": record}


@pytest.fixture
def make_envelope() -> Callable[..., Dict[str, Any]]:
    return envelope
