"""
Laundry-notify dispatcher: fans a finished cycle out to every attached user.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from laundry_notify.db import RegistrationStore
from laundry_notify.errors import TransportError
from laundry_notify.models import Cycle, DeliveryFailure, DispatchReport

log = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_TOPIC_SAFE = re.compile(r"[A-Za-z0-9_]")

FINISHED_BODY = "Your laundry is ready!"


class Transport(Protocol):
    def notify(self, topic: str, title: str, body: str) -> None:
        """Deliver one message. Raises TransportError on failure."""


def user_topic(user_name: str, separator: str = "_") -> str:
    """
    Per-user topic suffix, restricted to ntfy's topic alphabet [A-Za-z0-9_-].

    Whitespace runs collapse to the separator. Every other character outside
    [A-Za-z0-9_], "-" included, is written as "-" plus two hex digits per
    UTF-8 byte, so distinct names cannot share a topic through a reserved
    character: "Bob?x=1" becomes "Bob-3fx-3d1" and never "Bob".
    """
    out = []
    for ch in _WHITESPACE.sub(" ", user_name.strip()):
        if ch == " ":
            out.append(separator)
        elif _TOPIC_SAFE.fullmatch(ch):
            out.append(ch)
        else:
            out.extend(f"-{b:02x}" for b in ch.encode("utf-8"))
    return "".join(out)


def finished_title(cycle: Cycle) -> str:
    return f"{cycle.machine_type.title} finished"


class NotificationDispatcher:
    """
    Notifies every user attached to a finished cycle.

    A failed send is logged and recorded; the remaining recipients are
    still attempted. Nothing is retried.
    """

    def __init__(self, registrations: RegistrationStore, transport: Transport) -> None:
        self.registrations = registrations
        self.transport = transport

    def dispatch(self, cycle: Cycle) -> DispatchReport:
        report = DispatchReport(cycle_id=cycle.id, machine_type=cycle.machine_type)
        recipients = self.registrations.find_recipients_for_cycle(cycle.id)
        if not recipients:
            log.info("cycle %d finished with nobody registered", cycle.id)
            return report

        title = finished_title(cycle)
        for name in recipients:
            topic = user_topic(name)
            try:
                self.transport.notify(topic, title, FINISHED_BODY)
            except TransportError as e:
                log.error(
                    "notification failed user=%s topic=%s cycle=%d: %s",
                    name, topic, cycle.id, e,
                )
                report.failures.append(DeliveryFailure(name, topic, str(e)))
                continue
            except Exception as e:
                log.exception(
                    "unexpected notification error user=%s topic=%s cycle=%d",
                    name, topic, cycle.id,
                )
                report.failures.append(DeliveryFailure(name, topic, repr(e)))
                continue
            log.info("notified user=%s topic=%s cycle=%d", name, topic, cycle.id)
            report.delivered.append(name)

        return report
