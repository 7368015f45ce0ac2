# src/log_split/extension/errors.py
"""Extension-specific exceptions.

Client boundaries (Extensions API, Telemetry API, CloudWatch Logs) translate
transport and AWS errors into these so the coordinator only deals with one
hierarchy.
"""


class ExtensionError(Exception):
    """Base class for all extension errors."""


class RegistrationFailed(ExtensionError):
    """Raised when the Extensions API rejects or fails the /register call."""


class PollFailed(ExtensionError):
    """Raised when the /event/next long poll fails for any reason but cancellation."""


class Cancelled(ExtensionError):
    """Raised when a blocking wait is interrupted by the cancellation token."""


class TelemetrySubscriptionFailed(ExtensionError):
    """Raised when the Telemetry API subscription call fails."""


class QueueClosed(ExtensionError):
    """Raised when pushing to, or draining, a closed event queue."""


class EnvelopeDecodeError(ExtensionError):
    """Raised when a single telemetry envelope cannot be decoded."""


class SinkFailed(ExtensionError):
    """Raised when CloudWatch Logs rejects a batch and recovery is not possible.

    Attributes:
        log_group: Destination log group of the failed batch
        log_stream: Destination log stream of the failed batch
    """

    def __init__(self, log_group: str, log_stream: str, message: str) -> None:
        self.log_group = log_group
        self.log_stream = log_stream
        super().__init__(f"PutLogEvents to '{log_group}/{log_stream}' failed: {message}")
