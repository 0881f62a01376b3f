"""
Laundry-notify registration intake: the web front end's entry into the core.

A registration attaches to the machine's open cycle when one is running,
otherwise it waits (cycle_id NULL) for the next cycle to start. Repeating
a registration that is still outstanding is a no-op. Concurrent duplicates
are stopped by the schema's unique indexes and reported as already
registered.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from laundry_notify.db import CycleStore, Database, RegistrationStore, UserStore
from laundry_notify.errors import ConflictError, LaundryNotifyError, StoreError, ValidationError
from laundry_notify.models import (
    AlreadyRegistered,
    MachineType,
    Registered,
    RegistrationError,
    RegistrationOutcome,
    User,
)

log = logging.getLogger(__name__)


class RegistrationIntake:
    def __init__(
        self,
        db: Database,
        users: UserStore,
        cycles: CycleStore,
        registrations: RegistrationStore,
    ) -> None:
        self.db = db
        self.users = users
        self.cycles = cycles
        self.registrations = registrations

    def register(self, user_name: str, machine_type: str) -> RegistrationOutcome:
        name = (user_name or "").strip()
        if not name:
            return RegistrationError("name required", ValidationError.code)
        try:
            machine = MachineType.parse(machine_type)
        except ValidationError as e:
            return RegistrationError(e.message, e.code)

        try:
            user = self.resolve_user(name)
        except LaundryNotifyError as e:
            log.error("cannot resolve user %r: [%s] %s", name, e.code, e)
            return RegistrationError(e.message, e.code)

        try:
            return self._register(user, machine)
        except ConflictError:
            log.info("concurrent registration for user=%s type=%s", name, machine.value)
            return self._already(user, machine)
        except LaundryNotifyError as e:
            log.error(
                "registration failed user=%s type=%s: [%s] %s",
                name, machine.value, e.code, e,
            )
            return RegistrationError(e.message, e.code)

    def resolve_user(self, name: str) -> User:
        """Look the user up by name, creating it on first use."""
        user = self.users.find_by_name(name)
        if user is not None:
            return user
        try:
            user = self.users.create(name)
            log.info("created user id=%d name=%s", user.id, name)
            return user
        except ConflictError:
            # lost a race with another request creating the same name
            user = self.users.find_by_name(name)
            if user is None:
                raise StoreError(f"user {name!r} conflicted but cannot be found")
            return user

    def _register(self, user: User, machine: MachineType) -> RegistrationOutcome:
        with self.db.transaction():
            latest = self.cycles.find_most_recent(machine)
            outstanding = self.registrations.find_outstanding_for_user(user.name, machine)

            if latest is None or latest.is_finished:
                pending = [r for r in outstanding if r.is_pending]
                if pending:
                    log.debug("user=%s already waiting for next %s", user.name, machine.value)
                    return AlreadyRegistered(user, pending[0], None)
                reg = self.registrations.create(user.id, machine, None)
                log.info(
                    "registration %d: user=%s waits for next %s",
                    reg.id, user.name, machine.value,
                )
                return Registered(user, reg, None)

            current = [r for r in outstanding if r.cycle_id == latest.id]
            if current:
                log.debug("user=%s already on cycle %d", user.name, latest.id)
                return AlreadyRegistered(user, current[0], latest)
            reg = self.registrations.create(user.id, machine, latest.id)
            log.info(
                "registration %d: user=%s on running %s cycle %d",
                reg.id, user.name, machine.value, latest.id,
            )
            return Registered(user, reg, latest)

    def _already(self, user: User, machine: MachineType) -> RegistrationOutcome:
        outstanding = self.registrations.find_outstanding_for_user(user.name, machine)
        reg = outstanding[0] if outstanding else None
        cycle = None
        if reg is not None and reg.cycle_id is not None:
            cycle = self.cycles.get(reg.cycle_id)
        return AlreadyRegistered(user, reg, cycle)

    def search(self, name_prefix: str = "", limit: Optional[int] = None) -> List[User]:
        if limit is None:
            return self.users.search(name_prefix)
        return self.users.search(name_prefix, limit=limit)
