# src/log_split/extension/directive.py
"""Routing directives embedded in function log output.

A function selects the log group for its current invocation by printing a
line that contains the marker followed by a JSON object, e.g.

    ::sst::{"action":"log.split","properties":{"logGroupName":"/my/group"}}
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from log_split.common.schema import validation_error

LOG_SPLIT_ACTION = "log.split"
DEFAULT_MARKER = "::sst::"

DIRECTIVE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "action": {"type": "string"},
        "properties": {"type": "object"},
    },
    "required": ["action"],
}


@dataclass(frozen=True)
class RoutingDirective:
    action: str
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def log_group_name(self) -> Optional[str]:
        """The target group for a log.split directive, None for anything else."""
        if self.action != LOG_SPLIT_ACTION:
            return None
        name = self.properties.get("logGroupName")
        if isinstance(name, str) and name:
            return name
        return None


@dataclass(frozen=True)
class NoDirective:
    pass


@dataclass(frozen=True)
class Malformed:
    payload: str
    reason: str


DirectiveMatch = Union[RoutingDirective, NoDirective, Malformed]


class DirectiveParser:
    """Finds and decodes the routing directive in a single log line."""

    def __init__(self, marker: str = DEFAULT_MARKER):
        self.marker = marker
        self.pattern = re.compile(re.escape(marker) + r"(.+)")

    def parse(self, line: str) -> DirectiveMatch:
        match = self.pattern.search(line)
        if match is None:
            return NoDirective()

        payload = match.group(1)
        try:
            data = json.loads(payload)
        except ValueError as e:
            return Malformed(payload=payload, reason=f"invalid JSON: {e}")

        error = validation_error(data, DIRECTIVE_SCHEMA)
        if error is not None:
            return Malformed(payload=payload, reason=f"payload does not match the directive schema: {error}")

        return RoutingDirective(action=data["action"], properties=data.get("properties") or {})


def format_directive(log_group_name: str, marker: str = DEFAULT_MARKER) -> str:
    """Returns the line a function prints to send its logs to `log_group_name`."""
    body = {"action": LOG_SPLIT_ACTION, "properties": {"logGroupName": log_group_name}}
    return marker + json.dumps(body, separators=(",", ":"))
