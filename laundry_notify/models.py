"""
Laundry-notify domain types: machines, cycles, users, registrations.

Absence of a finish time is modelled explicitly (finished_at=None) and
queried through is_open / is_finished, never by comparing against a zero
timestamp.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Union

from laundry_notify.errors import ValidationError

RFC3339_UTC = "%Y-%m-%dT%H:%M:%SZ"


def now_utc() -> datetime:
    """Current wall-clock time, UTC, truncated to the second."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_rfc3339(ts: datetime) -> str:
    """Format an aware datetime as RFC 3339 UTC text."""
    return ts.astimezone(timezone.utc).strftime(RFC3339_UTC)


def from_rfc3339(text: str) -> datetime:
    """
    Parse RFC 3339 text into an aware datetime.

    Raises ValueError for anything without an explicit offset.
    """
    s = text.strip()
    if len(s) < 20 or s[10] not in "Tt ":
        raise ValueError(f"not an RFC 3339 timestamp: {text!r}")
    if s[-1] in "Zz":
        s = s[:-1] + "+00:00"
    ts = datetime.fromisoformat(s)
    if ts.tzinfo is None:
        raise ValueError(f"timestamp has no UTC offset: {text!r}")
    return ts


class MachineType(str, enum.Enum):
    """Machines the home-automation hub reports on."""

    WASHER = "washer"
    DRYER = "dryer"

    @classmethod
    def parse(cls, token: str) -> "MachineType":
        """Map a form value or topic segment onto a machine type."""
        value = (token or "").strip().lower()
        for member in cls:
            if member.value == value:
                return member
        choices = "|".join(m.value for m in cls)
        raise ValidationError(f"machine type must be {choices}, got {token!r}")

    @property
    def title(self) -> str:
        return self.value.title()


@dataclass(frozen=True)
class Cycle:
    """One run of a machine, from start to finish."""
    id: int
    machine_type: MachineType
    started_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.finished_at is None

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None


@dataclass(frozen=True)
class User:
    id: int
    name: str
    created_at: datetime


@dataclass(frozen=True)
class Registration:
    """A user's standing request to hear about a cycle of one machine type."""
    id: int
    user_id: int
    machine_type: MachineType
    cycle_id: Optional[int]  # None: attach to the next cycle that starts
    created_at: datetime

    @property
    def is_pending(self) -> bool:
        return self.cycle_id is None


# === Registration outcomes ===

@dataclass(frozen=True)
class Registered:
    """A new registration row was written."""
    user: User
    registration: Registration
    cycle: Optional[Cycle]  # the open cycle it was attached to, if any
    status = "registered"


@dataclass(frozen=True)
class AlreadyRegistered:
    """An equivalent registration was already outstanding; nothing written."""
    user: User
    registration: Optional[Registration]
    cycle: Optional[Cycle]
    status = "already_registered"


@dataclass(frozen=True)
class RegistrationError:
    """Registration failed; reason is safe to show to the caller."""
    reason: str
    code: str
    status = "error"


RegistrationOutcome = Union[Registered, AlreadyRegistered, RegistrationError]


# === Dispatch reporting ===

@dataclass(frozen=True)
class DeliveryFailure:
    user_name: str
    topic: str
    reason: str


@dataclass
class DispatchReport:
    """Per-recipient result of notifying everyone attached to a cycle."""
    cycle_id: int
    machine_type: MachineType
    delivered: List[str] = field(default_factory=list)
    failures: List[DeliveryFailure] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures
