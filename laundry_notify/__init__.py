"""
Laundry-notify: tells people when the washer or dryer they care about is done.

The home-automation hub publishes start/finish messages per machine over
MQTT. Laundry-notify:
- Tracks each machine run as a cycle (at most one open cycle per machine)
- Attaches registrations to the running cycle, or to the next one to start
- Pushes one ntfy notification per registered user when a cycle finishes

Duplicate and replayed bus messages are expected and ignored rather than
turned into extra cycles or extra notifications.
"""

__version__ = "0.1.0"

from laundry_notify.db import CycleStore, Database, RegistrationStore, UserStore
from laundry_notify.dispatch import NotificationDispatcher
from laundry_notify.engine import Action, CorrelationEngine, Outcome
from laundry_notify.intake import RegistrationIntake
from laundry_notify.models import (
    AlreadyRegistered,
    Cycle,
    MachineType,
    Registered,
    Registration,
    RegistrationError,
    User,
)
from laundry_notify.notify import NtfyConfig, NtfyNotifier

__all__ = [
    "Database",
    "CycleStore",
    "UserStore",
    "RegistrationStore",
    "CorrelationEngine",
    "Action",
    "Outcome",
    "NotificationDispatcher",
    "RegistrationIntake",
    "NtfyConfig",
    "NtfyNotifier",
    "MachineType",
    "Cycle",
    "User",
    "Registration",
    "Registered",
    "AlreadyRegistered",
    "RegistrationError",
]
