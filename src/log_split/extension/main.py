# src/log_split/extension/main.py

import signal
import sys
from datetime import datetime, timezone
from typing import Optional

import yaml

from log_split.common import aws, config
from log_split.common.logging import configure_logger, logger
from log_split.extension.coordinator import EXIT_FAILURE, Coordinator
from log_split.extension.directive import DirectiveParser
from log_split.extension.lifecycle import ExtensionSession, LifecycleClient
from log_split.extension.listener import EventQueue, TelemetryListener
from log_split.extension.processor import InvocationProcessor
from log_split.extension.sink import LogSink
from log_split.extension.telemetry_api import TelemetryApiClient


def make_stream_name(suffix: str, now: Optional[datetime] = None) -> str:
    """Date-partitioned log stream name, fixed for the lifetime of the process."""
    now = now or datetime.now(timezone.utc)
    return f"{now:%Y/%m/%d}/{suffix}"


def build_coordinator(settings: config.ExtensionSettings, logs_client=None) -> Coordinator:
    """
    Wires every component of the extension from its settings.

    Args:
        settings (config.ExtensionSettings): The merged runtime settings.
        logs_client: A CloudWatch Logs client; one is created if omitted.

    Returns:
        Coordinator: Ready to run().
    """
    session = ExtensionSession(
        runtime_api=settings.runtime_api, extension_name=settings.extension_name
    )
    events = EventQueue(maxsize=settings.queue_size)
    listener = TelemetryListener(
        events,
        host=settings.listener_host,
        port=settings.listener_port,
        grace_period=settings.shutdown_grace_seconds,
    )
    sink = LogSink(
        logs_client if logs_client is not None else aws.create_logs_client(),
        max_attempts=settings.sink_max_attempts,
        base_delay=settings.sink_base_delay_seconds,
        max_delay=settings.sink_max_delay_seconds,
    )
    processor = InvocationProcessor(
        events,
        sink,
        stream_name=make_stream_name(settings.stream_suffix),
        default_log_group=settings.default_log_group,
        memory_size_mb=settings.memory_size_mb,
        parser=DirectiveParser(settings.directive_marker),
    )
    telemetry_api = TelemetryApiClient(
        session,
        types=settings.telemetry_types,
        max_items=settings.buffering_max_items,
        max_bytes=settings.buffering_max_bytes,
        timeout_ms=settings.buffering_timeout_ms,
    )
    return Coordinator(LifecycleClient(session), listener, processor, telemetry_api)


def main() -> int:
    """Entrypoint of the extension executable."""
    try:
        settings = config.load_settings()
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        logger.error("FATAL: Could not load configuration.", extra={"error": str(e)})
        return EXIT_FAILURE

    configure_logger(settings.log_level)
    coordinator = build_coordinator(settings)

    def _on_signal(signum, frame) -> None:
        logger.info("Received signal, stopping.", extra={"signal": signal.Signals(signum).name})
        coordinator.cancel()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    return coordinator.run()


if __name__ == "__main__":
    sys.exit(main())
