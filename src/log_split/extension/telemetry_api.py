# src/log_split/extension/telemetry_api.py

from typing import Any, Dict, Sequence

import requests

from log_split.common.logging import logger
from log_split.extension.errors import TelemetrySubscriptionFailed
from log_split.extension.lifecycle import ExtensionSession

TELEMETRY_API_VERSION = "2022-07-01"
TELEMETRY_SCHEMA_VERSION = "2022-12-13"


class TelemetryApiClient:
    """
    A client for the Lambda Telemetry API.

    Purpose:
        Subscribes the local listener so the platform starts pushing platform
        and function telemetry batches to it.
    """

    def __init__(
        self,
        session: ExtensionSession,
        types: Sequence[str] = ("platform", "function"),
        max_items: int = 1000,
        max_bytes: int = 262144,
        timeout_ms: int = 100,
    ):
        self.session = session
        self.types = list(types)
        self.max_items = max_items
        self.max_bytes = max_bytes
        self.timeout_ms = timeout_ms
        self.url = f"http://{session.runtime_api}/{TELEMETRY_API_VERSION}/telemetry"

    def build_subscription(self, listener_uri: str) -> Dict[str, Any]:
        return {
            "schemaVersion": TELEMETRY_SCHEMA_VERSION,
            "types": self.types,
            "buffering": {
                "maxItems": self.max_items,
                "maxBytes": self.max_bytes,
                "timeoutMs": self.timeout_ms,
            },
            "destination": {"protocol": "HTTP", "URI": listener_uri},
        }

    def subscribe(self, listener_uri: str) -> str:
        """
        Subscribes the listener at `listener_uri` to the Telemetry API.

        Args:
            listener_uri (str): The address returned by TelemetryListener.start().

        Returns:
            str: The response body sent back by the platform.

        Raises:
            TelemetrySubscriptionFailed: On a transport error or a non-2xx status.
        """
        payload = self.build_subscription(listener_uri)
        try:
            logger.info("Subscribing to the Telemetry API.", extra={"uri": listener_uri, "types": self.types})
            response = self.session.http.put(
                self.url, json=payload, headers=self.session.identifier_headers()
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Telemetry API subscription failed: {e}")
            if e.response is not None:
                logger.error(f"Telemetry API Response: {e.response.text}")
            raise TelemetrySubscriptionFailed(str(e)) from e

        logger.info("Successfully subscribed to the Telemetry API.")
        return response.text
