# src/log_split/extension/coordinator.py

import threading
from typing import Optional

from log_split.common.logging import logger
from log_split.extension.errors import (
    Cancelled,
    ExtensionError,
    PollFailed,
    QueueClosed,
)
from log_split.extension.lifecycle import InvokeEvent, LifecycleClient, ShutdownEvent
from log_split.extension.listener import TelemetryListener
from log_split.extension.processor import InvocationProcessor
from log_split.extension.telemetry_api import TelemetryApiClient

EXIT_OK = 0
EXIT_FAILURE = 1


class Coordinator:
    """
    Drives the extension for the whole life of the execution environment.

    Purpose:
        Registers once, starts the listener, subscribes it to the Telemetry
        API, then alternates between waiting for the next lifecycle event and
        processing one invocation to completion. Invocations never overlap:
        the platform holds the next INVOKE until this one is done.
    """

    def __init__(
        self,
        lifecycle: LifecycleClient,
        listener: TelemetryListener,
        processor: InvocationProcessor,
        telemetry_api: Optional[TelemetryApiClient] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.lifecycle = lifecycle
        self.listener = listener
        self.processor = processor
        self.telemetry_api = telemetry_api
        self.cancel_event = cancel_event or threading.Event()
        self.invocations = 0

    def cancel(self) -> None:
        """Requests a graceful stop. Idempotent; safe from a signal handler."""
        self.cancel_event.set()
        self.listener.events.close()

    def _initialize(self) -> None:
        """
        Registers, starts the listener and subscribes it.

        Raises:
            RegistrationFailed: If registration fails; nothing is reported since
                                the platform does not know the extension yet.
            ExtensionError: If a later step fails, after reporting an init error.
        """
        self.lifecycle.register()

        try:
            address = self.listener.start()
        except OSError as e:
            logger.error(f"Failed to start telemetry listener: {e}")
            self.lifecycle.report_init_error("Extension.ListenerStartFailed")
            raise ExtensionError(f"listener failed to start: {e}") from e

        if self.telemetry_api is not None:
            try:
                self.telemetry_api.subscribe(address)
            except ExtensionError:
                self.lifecycle.report_init_error("Extension.TelemetrySubscribeFailed")
                raise

    def run(self) -> int:
        """
        Runs the extension until SHUTDOWN, cancellation or a poll failure.

        Returns:
            int: The process exit code.
        """
        try:
            self._initialize()
        except ExtensionError as e:
            logger.error("FATAL: Extension initialization failed.", extra={"error": str(e)})
            self.listener.shutdown()
            return EXIT_FAILURE

        try:
            return self._loop()
        finally:
            self.listener.shutdown()
            logger.info("Extension stopped.", extra={"invocations": self.invocations})

    def _loop(self) -> int:
        while True:
            try:
                event = self.lifecycle.next_event(self.cancel_event)
            except Cancelled:
                logger.info("Cancelled while waiting for the next event, exiting.")
                return EXIT_OK
            except PollFailed as e:
                logger.error("Exiting. Error polling for the next event.", extra={"error": str(e)})
                self.lifecycle.report_exit_error("Extension.PollFailed")
                return EXIT_FAILURE

            if isinstance(event, ShutdownEvent):
                logger.info("Received SHUTDOWN.", extra={"reason": event.shutdown_reason})
                return EXIT_OK

            if isinstance(event, InvokeEvent):
                try:
                    result = self.processor.run_invocation(event, self.cancel_event)
                except (Cancelled, QueueClosed):
                    logger.info("Stopped during an invocation, exiting.")
                    return EXIT_OK
                self.invocations += 1
                logger.info(
                    "Invocation processed.",
                    extra={
                        "request_id": result.request_id,
                        "log_group": result.log_group,
                        "count": result.message_count,
                        "succeeded": result.succeeded,
                    },
                )
