# src/log_split/common/logging.py

from aws_lambda_powertools import Logger

# ==============================================================================
# Centralized Logger Initialization
# ==============================================================================
#
# Purpose:
#   To provide a single, pre-configured instance of the AWS Lambda Powertools Logger
#   for the whole extension process. Every module imports 'logger' from here so
#   that all records share one configuration and end up as structured JSON on
#   stdout, next to the function's own output.
#
# How it Works:
#   1. We initialize the Logger here at the module level.
#   2. At startup, main.py loads the environment-specific config (e.g. prod.yaml)
#      and applies the log level through configure_logger().
#   3. While an invocation is being processed, the processor appends the
#      request id as a persistent key so every record can be correlated.
#
# Usage in other files:
#   from log_split.common.logging import logger
#
#   def my_function():
#       logger.info("This is a structured log message.")
#
# ==============================================================================

SERVICE_NAME = "log-split-extension"

logger = Logger(service=SERVICE_NAME)


def configure_logger(level: str) -> None:
    """Applies the configured log level to the shared logger."""
    logger.setLevel(level.upper())
