"""
Laundry-notify correlation engine: turns machine messages into cycles and notifications.

Per machine type the engine is a two-state machine:

    IDLE    (no open cycle)   --started_at-->  RUNNING  (open cycle created,
                                                         pending registrations attached)
    RUNNING (one open cycle)  --finished_at--> IDLE     (cycle closed, attached users notified)

Anything else is a duplicate or anomaly and is ignored:
- started_at while RUNNING        -> duplicate start (bus replay)
- started_at older than the last
  finished cycle                   -> stale replay
- finished_at while IDLE           -> duplicate or orphan finish

All store writes for one message happen in one transaction. Notifications
are sent after that transaction commits, so a rolled-back step never
notifies anyone.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from laundry_notify.db import CycleStore, Database, RegistrationStore
from laundry_notify.dispatch import NotificationDispatcher
from laundry_notify.errors import LaundryNotifyError, ParseError, StoreError
from laundry_notify.messages import Field, MachineMessage, parse_message
from laundry_notify.models import Cycle, DispatchReport, MachineType, to_rfc3339

log = logging.getLogger(__name__)


class Action(str, enum.Enum):
    CYCLE_STARTED = "cycle_started"
    DUPLICATE_START = "duplicate_start"
    STALE_START = "stale_start"
    CYCLE_FINISHED = "cycle_finished"
    DUPLICATE_FINISH = "duplicate_finish"
    ORPHAN_FINISH = "orphan_finish"
    DROPPED = "dropped"


@dataclass(frozen=True)
class Outcome:
    """What the engine did with one message."""
    action: Action
    cycle: Optional[Cycle] = None
    attached: List[int] = field(default_factory=list)  # registration ids
    report: Optional[DispatchReport] = None
    error: Optional[str] = None


class CorrelationEngine:
    """Correlates start/finish messages with cycles and registrations."""

    def __init__(
        self,
        db: Database,
        cycles: CycleStore,
        registrations: RegistrationStore,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self.db = db
        self.cycles = cycles
        self.registrations = registrations
        self.dispatcher = dispatcher

    def handle(self, topic: str, payload: Union[str, bytes]) -> Outcome:
        """
        Process one raw bus message.

        Parse and store errors are logged and reported as DROPPED; they
        never propagate, so the caller's loop keeps running.
        """
        try:
            msg = parse_message(topic, payload)
        except ParseError as e:
            log.warning("dropping message topic=%s payload=%r: %s", topic, payload, e)
            return Outcome(Action.DROPPED, error=str(e))

        try:
            return self.apply(msg)
        except StoreError as e:
            log.exception(
                "store failure applying %s for type=%s at=%s",
                msg.field.value, msg.machine_type.value, to_rfc3339(msg.timestamp),
            )
            return Outcome(Action.DROPPED, error=str(e))
        except LaundryNotifyError as e:
            log.error(
                "failed to apply %s for type=%s at=%s: [%s] %s",
                msg.field.value, msg.machine_type.value,
                to_rfc3339(msg.timestamp), e.code, e,
            )
            return Outcome(Action.DROPPED, error=str(e))

    def apply(self, msg: MachineMessage) -> Outcome:
        if msg.field is Field.STARTED_AT:
            return self.on_started(msg.machine_type, msg.timestamp)
        return self.on_finished(msg.machine_type, msg.timestamp)

    def on_started(self, machine: MachineType, started_at: datetime) -> Outcome:
        with self.db.transaction():
            latest = self.cycles.find_most_recent(machine)

            if latest is not None and latest.is_open:
                log.info(
                    "duplicate start ignored type=%s at=%s open_cycle=%d",
                    machine.value, to_rfc3339(started_at), latest.id,
                )
                return Outcome(Action.DUPLICATE_START, cycle=latest)

            if latest is not None and started_at < latest.finished_at:
                log.info(
                    "stale start ignored type=%s at=%s last_finished=%s cycle=%d",
                    machine.value, to_rfc3339(started_at),
                    to_rfc3339(latest.finished_at), latest.id,
                )
                return Outcome(Action.STALE_START, cycle=latest)

            cycle = self.cycles.create(machine, started_at)
            log.info(
                "cycle started type=%s id=%d at=%s",
                machine.value, cycle.id, to_rfc3339(started_at),
            )

            attached = []
            for reg in self.registrations.find_pending_for_type(machine):
                self.registrations.attach_cycle(reg.id, cycle.id)
                attached.append(reg.id)
                log.debug("registration %d attached to cycle %d", reg.id, cycle.id)

        if attached:
            log.info("attached %d pending registrations to cycle %d", len(attached), cycle.id)
        return Outcome(Action.CYCLE_STARTED, cycle=cycle, attached=attached)

    def on_finished(self, machine: MachineType, finished_at: datetime) -> Outcome:
        with self.db.transaction():
            latest = self.cycles.find_most_recent(machine)

            if latest is None:
                log.warning(
                    "finish without any cycle ignored type=%s at=%s",
                    machine.value, to_rfc3339(finished_at),
                )
                return Outcome(Action.ORPHAN_FINISH)

            if latest.is_finished:
                log.info(
                    "duplicate finish ignored type=%s at=%s cycle=%d",
                    machine.value, to_rfc3339(finished_at), latest.id,
                )
                return Outcome(Action.DUPLICATE_FINISH, cycle=latest)

            cycle = self.cycles.mark_finished(latest.id, finished_at)
            log.info(
                "cycle finished type=%s id=%d at=%s",
                machine.value, cycle.id, to_rfc3339(finished_at),
            )

        report = self.dispatcher.dispatch(cycle)
        return Outcome(Action.CYCLE_FINISHED, cycle=cycle, report=report)
