# src/log_split/extension/lifecycle.py

import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

import requests

from log_split.common.logging import logger
from log_split.extension.errors import Cancelled, PollFailed, RegistrationFailed

# Constants for the Lambda Extensions API
EXTENSIONS_API_VERSION = "2020-01-01"
EXTENSION_NAME_HEADER = "Lambda-Extension-Name"
EXTENSION_IDENTIFIER_HEADER = "Lambda-Extension-Identifier"
EXTENSION_ERROR_TYPE_HEADER = "Lambda-Extension-Function-Error-Type"

INVOKE = "INVOKE"
SHUTDOWN = "SHUTDOWN"


@dataclass(frozen=True)
class Registration:
    extension_id: str
    function_name: str = ""
    function_version: str = ""
    handler: str = ""
    events: Tuple[str, ...] = (INVOKE, SHUTDOWN)


@dataclass(frozen=True)
class Tracing:
    type: str = ""
    value: str = ""


@dataclass(frozen=True)
class InvokeEvent:
    request_id: str
    deadline_ms: int = 0
    invoked_function_arn: str = ""
    tracing: Tracing = field(default_factory=Tracing)


@dataclass(frozen=True)
class ShutdownEvent:
    shutdown_reason: str = ""
    deadline_ms: int = 0


LifecycleEvent = Union[InvokeEvent, ShutdownEvent]


@dataclass
class ExtensionSession:
    """
    Process-wide state shared by every client talking to the Lambda runtime API.

    Purpose:
        Holds the runtime API address, the HTTP session and, once /register
        has succeeded, the Registration whose identifier every later call
        must carry. Built once in main.py and passed by reference.
    """

    runtime_api: str
    extension_name: str
    http: requests.Session = field(default_factory=requests.Session)
    registration: Optional[Registration] = None

    @property
    def extension_id(self) -> str:
        if self.registration is None:
            raise RegistrationFailed("Extension is not registered yet.")
        return self.registration.extension_id

    def identifier_headers(self) -> Dict[str, str]:
        return {EXTENSION_IDENTIFIER_HEADER: self.extension_id}


def parse_lifecycle_event(data: Dict[str, Any]) -> LifecycleEvent:
    """
    Converts a decoded /event/next body into an InvokeEvent or ShutdownEvent.

    Raises:
        PollFailed: If the event type is missing or not one we subscribed to.
    """
    event_type = data.get("eventType")
    if event_type == INVOKE:
        tracing = data.get("tracing") or {}
        return InvokeEvent(
            request_id=data.get("requestId", ""),
            deadline_ms=int(data.get("deadlineMs", 0)),
            invoked_function_arn=data.get("invokedFunctionArn", ""),
            tracing=Tracing(type=tracing.get("type", ""), value=tracing.get("value", "")),
        )
    if event_type == SHUTDOWN:
        return ShutdownEvent(
            shutdown_reason=data.get("shutdownReason", ""),
            deadline_ms=int(data.get("deadlineMs", 0)),
        )
    raise PollFailed(f"Unexpected lifecycle event type: {event_type!r}")


class LifecycleClient:
    """
    A client for the Lambda Extensions API.

    Purpose:
        Registers the extension, long-polls for INVOKE and SHUTDOWN events and
        reports initialization or exit errors back to the platform.
    """

    def __init__(self, session: ExtensionSession, poll_interval: float = 0.1):
        """
        Initializes the LifecycleClient.

        Args:
            session (ExtensionSession): The shared extension session.
            poll_interval (float): How often, in seconds, a pending long poll
                                   checks the cancellation token.
        """
        self.session = session
        self.poll_interval = poll_interval
        self.base_url = (
            f"http://{session.runtime_api}/{EXTENSIONS_API_VERSION}/extension"
        )

    def register(self) -> Registration:
        """
        Registers the extension for INVOKE and SHUTDOWN events.

        Purpose:
            Must be the first call of the process. The identifier returned in
            the response header is stored on the session for every later call.

        Returns:
            Registration: The registration issued by the platform.

        Raises:
            RegistrationFailed: On a transport error, a non-200 status, a
                                missing identifier, or a second call.
        """
        if self.session.registration is not None:
            raise RegistrationFailed("Extension is already registered.")

        try:
            logger.info("Registering extension.", extra={"extension_name": self.session.extension_name})
            response = self.session.http.post(
                f"{self.base_url}/register",
                json={"events": [INVOKE, SHUTDOWN]},
                headers={EXTENSION_NAME_HEADER: self.session.extension_name},
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Registration request failed: {e}")
            raise RegistrationFailed(str(e)) from e

        if response.status_code != 200:
            logger.error(
                "Registration failed.",
                extra={"status_code": response.status_code, "body": response.text},
            )
            raise RegistrationFailed(
                f"registration failed with status {response.status_code}"
            )

        extension_id = response.headers.get(EXTENSION_IDENTIFIER_HEADER)
        if not extension_id:
            raise RegistrationFailed("registration response carried no extension identifier")

        try:
            body = response.json()
        except ValueError as e:
            raise RegistrationFailed(f"registration response is not JSON: {e}") from e
        if not isinstance(body, dict):
            raise RegistrationFailed("registration response is not a JSON object")

        registration = Registration(
            extension_id=extension_id,
            function_name=body.get("functionName", ""),
            function_version=body.get("functionVersion", ""),
            handler=body.get("handler", ""),
        )
        self.session.registration = registration
        logger.info(
            "Extension registered.",
            extra={
                "function_name": registration.function_name,
                "function_version": registration.function_version,
            },
        )
        return registration

    def _fetch_next_event(self) -> LifecycleEvent:
        try:
            response = self.session.http.get(
                f"{self.base_url}/event/next",
                headers=self.session.identifier_headers(),
            )
        except requests.exceptions.RequestException as e:
            raise PollFailed(str(e)) from e
        if response.status_code != 200:
            raise PollFailed(f"request failed with status {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise PollFailed(f"next event response is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise PollFailed("next event response is not a JSON object")
        return parse_lifecycle_event(data)

    def next_event(self, cancel: Optional[threading.Event] = None) -> LifecycleEvent:
        """
        Blocks until the platform delivers the next INVOKE or SHUTDOWN event.

        Purpose:
            The HTTP long poll has no deadline, so it runs on a daemon thread
            while this thread waits for its result and watches the
            cancellation token. A daemon thread never holds up process exit.

        Args:
            cancel (Optional[threading.Event]): Cancellation token.

        Returns:
            LifecycleEvent: The next lifecycle event.

        Raises:
            Cancelled: If the token fires before the event arrives.
            PollFailed: On any transport, status or decoding error.
        """
        # Fails fast with RegistrationFailed before spawning the worker
        self.session.identifier_headers()

        result_queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue()

        def _poll_worker() -> None:
            try:
                result_queue.put(("ok", self._fetch_next_event()))
            except BaseException as exc:
                result_queue.put(("error", exc))

        thread = threading.Thread(target=_poll_worker, daemon=True, name="event-next")
        thread.start()

        while True:
            if cancel is not None and cancel.is_set():
                raise Cancelled("Cancelled while waiting for the next event.")
            try:
                status, value = result_queue.get(timeout=self.poll_interval)
                break
            except queue.Empty:
                continue

        if status == "error":
            if isinstance(value, PollFailed):
                raise value
            raise PollFailed(f"Unexpected error while polling: {value}") from value
        return value

    def _report_error(self, path: str, error_type: str) -> Optional[str]:
        headers = {EXTENSION_ERROR_TYPE_HEADER: error_type}
        try:
            headers.update(self.session.identifier_headers())
            response = self.session.http.post(f"{self.base_url}/{path}", headers=headers)
            response.raise_for_status()
            body = response.json()
            status = body.get("status") if isinstance(body, dict) else None
            logger.info(f"Reported {path} to the platform.", extra={"error_type": error_type, "status": status})
            return status
        except (requests.exceptions.RequestException, RegistrationFailed, ValueError) as e:
            logger.error(f"Failed to report {path}: {e}", extra={"error_type": error_type})
            return None

    def report_init_error(self, error_type: str) -> Optional[str]:
        """
        Reports an initialization failure. Best effort: never raises.

        Args:
            error_type (str): Category such as 'Extension.ListenerStartFailed'.

        Returns:
            Optional[str]: The status returned by the platform, or None on failure.
        """
        return self._report_error("init/error", error_type)

    def report_exit_error(self, error_type: str) -> Optional[str]:
        """
        Reports an unexpected failure before exiting. Best effort: never raises.

        Args:
            error_type (str): Category such as 'Extension.PollFailed'.

        Returns:
            Optional[str]: The status returned by the platform, or None on failure.
        """
        return self._report_error("exit/error", error_type)
