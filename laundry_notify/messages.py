"""
Laundry-notify bus message parsing.

The hub publishes one message per state change:

    topic:   home/laundry/<machine>        e.g. home/laundry/washer
    payload: <field>=<RFC 3339 timestamp>  e.g. started_at=2024-01-01T10:00:00Z
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Union

from laundry_notify.errors import ParseError, ValidationError
from laundry_notify.models import MachineType, from_rfc3339


class Field(str, enum.Enum):
    STARTED_AT = "started_at"
    FINISHED_AT = "finished_at"


@dataclass(frozen=True)
class MachineMessage:
    """A decoded state change for one machine."""
    machine_type: MachineType
    field: Field
    timestamp: datetime


def machine_from_topic(topic: str) -> MachineType:
    """The trailing topic segment names the machine."""
    leaf = (topic or "").rstrip("/").rsplit("/", 1)[-1]
    if not leaf:
        raise ParseError(f"topic has no machine segment: {topic!r}")
    try:
        return MachineType.parse(leaf)
    except ValidationError as e:
        raise ParseError(f"unknown machine in topic {topic!r}") from e


def parse_timestamp(value: str) -> datetime:
    try:
        return from_rfc3339(value)
    except ValueError as e:
        raise ParseError(f"bad timestamp {value!r}: {e}") from e


def parse_message(topic: str, payload: Union[str, bytes]) -> MachineMessage:
    """Decode a (topic, payload) pair. Raises ParseError on anything malformed."""
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("ascii")
        except UnicodeDecodeError as e:
            raise ParseError(f"payload is not ASCII: {payload!r}") from e

    machine = machine_from_topic(topic)

    key, sep, value = payload.strip().partition("=")
    if not sep:
        raise ParseError(f"payload missing '=': {payload!r}")
    try:
        field = Field(key.strip())
    except ValueError as e:
        raise ParseError(f"unknown payload field {key!r}") from e

    return MachineMessage(
        machine_type=machine,
        field=field,
        timestamp=parse_timestamp(value),
    )
