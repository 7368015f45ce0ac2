# src/log_split/extension/sink.py
"""LogSink: ordered batch append to CloudWatch Logs.

A batch that hits ResourceNotFoundException triggers CreateLogGroup and
CreateLogStream, then the put is retried with exponential backoff. Attempts
are capped so a destination that can never be created (missing IAM
permission, invalid name) ends in SinkFailed instead of looping forever.
"""

from dataclasses import dataclass
from typing import Any, Iterator, List, Sequence

from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from log_split.common.aws import RESOURCE_ALREADY_EXISTS, RESOURCE_NOT_FOUND, error_code
from log_split.common.logging import logger
from log_split.extension.errors import SinkFailed

# PutLogEvents service limits
MAX_BATCH_EVENTS = 10000
MAX_BATCH_BYTES = 1048576
EVENT_OVERHEAD_BYTES = 26


@dataclass(frozen=True)
class LogEvent:
    message: str
    timestamp_ms: int

    def size(self) -> int:
        return len(self.message.encode("utf-8")) + EVENT_OVERHEAD_BYTES


def _is_destination_missing(exc: BaseException) -> bool:
    return isinstance(exc, ClientError) and error_code(exc) == RESOURCE_NOT_FOUND


def split_batches(events: Sequence[LogEvent]) -> Iterator[List[LogEvent]]:
    """Splits events into consecutive batches within the PutLogEvents limits."""
    batch: List[LogEvent] = []
    batch_bytes = 0
    for event in events:
        size = event.size()
        if batch and (len(batch) >= MAX_BATCH_EVENTS or batch_bytes + size > MAX_BATCH_BYTES):
            yield batch
            batch, batch_bytes = [], 0
        batch.append(event)
        batch_bytes += size
    if batch:
        yield batch


class LogSink:
    """
    Writes ordered log batches to CloudWatch Logs.

    Purpose:
        Wraps put_log_events with the create-if-missing recovery the extension
        needs: log groups chosen at runtime by a directive usually do not
        exist until the first flush targets them.
    """

    def __init__(
        self,
        client: Any,
        max_attempts: int = 3,
        base_delay: float = 0.2,
        max_delay: float = 2.0,
    ):
        """
        Initializes the LogSink.

        Args:
            client (Any): A boto3 CloudWatch Logs client.
            max_attempts (int): Total put attempts per batch, first try included.
            base_delay (float): Initial backoff in seconds between attempts.
            max_delay (float): Upper bound of the backoff in seconds.
        """
        self.client = client
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def _create_destination(self, group: str, stream: str) -> None:
        """Creates the log group then the log stream, tolerating existing ones."""
        logger.info("Creating log destination.", extra={"log_group": group, "log_stream": stream})
        try:
            self.client.create_log_group(logGroupName=group)
        except ClientError as e:
            if error_code(e) != RESOURCE_ALREADY_EXISTS:
                raise
        try:
            self.client.create_log_stream(logGroupName=group, logStreamName=stream)
        except ClientError as e:
            if error_code(e) != RESOURCE_ALREADY_EXISTS:
                raise

    def _put_batch(self, group: str, stream: str, batch: List[LogEvent]) -> None:
        def _before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                "Log destination missing, creating it before retrying.",
                extra={"log_group": group, "attempt": retry_state.attempt_number},
            )
            self._create_destination(group, stream)

        retrying = Retrying(
            retry=retry_if_exception(_is_destination_missing),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.base_delay, max=self.max_delay, jitter=self.base_delay
            ),
            before_sleep=_before_sleep,
            reraise=True,
        )
        log_events = [{"timestamp": e.timestamp_ms, "message": e.message} for e in batch]
        retrying(
            self.client.put_log_events,
            logGroupName=group,
            logStreamName=stream,
            logEvents=log_events,
        )

    def put_events(self, group: str, stream: str, events: Sequence[LogEvent]) -> int:
        """
        Appends events, in order, to `group`/`stream`.

        Args:
            group (str): Destination log group name.
            stream (str): Destination log stream name.
            events (Sequence[LogEvent]): Events in submission order.

        Returns:
            int: The number of events written.

        Raises:
            SinkFailed: If a batch cannot be written, including when the
                        destination is still missing after max_attempts.
        """
        written = 0
        for batch in split_batches(events):
            try:
                self._put_batch(group, stream, batch)
            except (ClientError, BotoCoreError, RetryError) as e:
                raise SinkFailed(group, stream, str(e)) from e
            written += len(batch)
        logger.debug("Wrote log events.", extra={"log_group": group, "count": written})
        return written
