"""Turn raw container log lines into records carrying workload identity.

The record's JSON form is the contract with downstream consumers::

    {"body": {"stringValue": "<message>"},
     "attributes": [{"key": "k8s.namespace", "value": {"stringValue": "prod"}}, ...]}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from kubelogs.errors import SerializationFailure
from kubelogs.models import WorkloadIdentity

logger = logging.getLogger(__name__)

ATTR_NAMESPACE = "k8s.namespace"
ATTR_POD = "k8s.pod"
ATTR_CONTAINER = "k8s.container"
ATTR_NODE = "k8s.node"
ATTR_LABEL_PREFIX = "k8s.label."

# "2024-01-15T10:30:45.123456789Z message": the "Z " terminator sits between
# these offsets for every fractional-second precision the kubelet emits.
_MIN_TIMESTAMPED_LENGTH = 32
_TERMINATOR_SCAN_START = 20
_TERMINATOR_SCAN_END = 35


def strip_timestamp(line: str) -> str:
    """Drop a leading RFC3339Nano timestamp and its separating space, if present."""
    if (
        len(line) >= _MIN_TIMESTAMPED_LENGTH
        and line[0].isdigit()
        and line[4] == "-"
        and line[7] == "-"
        and line[10] == "T"
    ):
        end = min(_TERMINATOR_SCAN_END, len(line) - 1) + 1
        idx = line.find("Z ", _TERMINATOR_SCAN_START, end)
        if idx != -1:
            return line[idx + 2:]
    return line


@dataclass(frozen=True)
class OutputRecord:
    body: str
    attributes: tuple[tuple[str, str], ...]

    def attribute_map(self) -> dict[str, str]:
        return dict(self.attributes)

    def to_wire(self) -> dict[str, Any]:
        return {
            "body": {"stringValue": self.body},
            "attributes": [
                {"key": key, "value": {"stringValue": value}}
                for key, value in self.attributes
            ],
        }

    def to_json(self) -> str:
        try:
            return self._marshal()
        except SerializationFailure as exc:
            logger.warning("Error marshalling enriched log line: %s", exc)
            return self._fallback_json()

    def _marshal(self) -> str:
        try:
            return json.dumps(self.to_wire(), ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise SerializationFailure(str(exc)) from exc

    def _fallback_json(self) -> str:
        attributes = ",".join(
            f'{{"key":{_quote(key)},"value":{{"stringValue":{_quote(value)}}}}}'
            for key, value in self.attributes
        )
        return f'{{"body":{{"stringValue":{_quote(self.body)}}},"attributes":[{attributes}]}}'


def _quote(text: str) -> str:
    out = ['"']
    for char in str(text):
        if char == '"':
            out.append('\\"')
        elif char == "\\":
            out.append("\\\\")
        elif ord(char) < 0x20 or 0xD800 <= ord(char) <= 0xDFFF:
            out.append(f"\\u{ord(char):04x}")
        else:
            out.append(char)
    out.append('"')
    return "".join(out)


def identity_attributes(identity: WorkloadIdentity) -> tuple[tuple[str, str], ...]:
    attributes = [
        (ATTR_NAMESPACE, identity.namespace),
        (ATTR_POD, identity.pod),
        (ATTR_CONTAINER, identity.container),
        (ATTR_NODE, identity.node),
    ]
    attributes.extend((ATTR_LABEL_PREFIX + key, value) for key, value in sorted(identity.labels))
    return tuple(attributes)


def enrich_line(line: str, identity: WorkloadIdentity) -> OutputRecord:
    return OutputRecord(body=strip_timestamp(line), attributes=identity_attributes(identity))
