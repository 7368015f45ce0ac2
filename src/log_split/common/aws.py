# src/log_split/common/aws.py

from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError

# CloudWatch Logs error codes the sink reacts to
RESOURCE_NOT_FOUND = "ResourceNotFoundException"
RESOURCE_ALREADY_EXISTS = "ResourceAlreadyExistsException"


def create_logs_client(session: Optional[boto3.Session] = None) -> Any:
    """
    Creates a CloudWatch Logs client.

    Purpose:
        The extension builds exactly one client at startup and hands it to the
        LogSink. The region and credentials come from the default chain, which
        inside Lambda means AWS_REGION and the function's execution role.

    Args:
        session (Optional[boto3.Session]): An existing session to reuse.
                                           A new one is created if omitted.

    Returns:
        Any: A botocore client for the 'logs' service.
    """
    session = session or boto3.Session()
    return session.client("logs")


def error_code(exc: ClientError) -> str:
    """Returns the AWS error code carried by a ClientError, or an empty string."""
    return exc.response.get("Error", {}).get("Code", "")
