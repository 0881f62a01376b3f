#!/usr/bin/env python3
"""
Laundry-notify scenario simulation: replays bus messages and checks invariants.

Every step (a registration or a bus message) is followed by a full
invariant check, and notifications are captured in memory instead of
being sent.

Usage: python -m laundry_notify.simulate
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from typing import List

from laundry_notify.db import CycleStore, Database, RegistrationStore, UserStore
from laundry_notify.dispatch import NotificationDispatcher
from laundry_notify.engine import CorrelationEngine
from laundry_notify.intake import RegistrationIntake
from laundry_notify.invariants import InvariantResult, check_all_invariants
from laundry_notify.notify import RecordingTransport

TOPIC_PREFIX = "home/laundry"


@dataclass
class SimulationFrame:
    step: int
    action: str
    result: str
    invariant_results: List[InvariantResult]

    def __str__(self) -> str:
        passed = sum(1 for r in self.invariant_results if r.passed)
        failed = sum(1 for r in self.invariant_results if not r.passed)
        status = "✓" if failed == 0 else "✗"
        return (
            f"[Frame {self.step}] {self.action} -> {self.result}\n"
            f"  {status} Invariants: {passed} passed, {failed} failed"
        )


class Simulator:
    """Wires the real stores and engine to a throwaway database."""

    def __init__(self) -> None:
        self.tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        self.tmp.close()
        self.db = Database(self.tmp.name)
        self.db.init_db()
        self.cycles = CycleStore(self.db)
        self.registrations = RegistrationStore(self.db)
        self.transport = RecordingTransport()
        self.engine = CorrelationEngine(
            self.db,
            self.cycles,
            self.registrations,
            NotificationDispatcher(self.registrations, self.transport),
        )
        self.intake = RegistrationIntake(
            self.db, UserStore(self.db), self.cycles, self.registrations
        )
        self.frames: List[SimulationFrame] = []
        self.step = 0

    def cleanup(self) -> None:
        for suffix in ("", "-wal", "-shm"):
            try:
                os.unlink(self.tmp.name + suffix)
            except OSError:
                pass

    def _record_frame(self, action: str, result: str) -> SimulationFrame:
        _, _, results = check_all_invariants(self.db)
        frame = SimulationFrame(
            step=self.step,
            action=action,
            result=result,
            invariant_results=results,
        )
        self.frames.append(frame)
        self.step += 1
        return frame

    def register(self, name: str, machine: str) -> SimulationFrame:
        outcome = self.intake.register(name, machine)
        return self._record_frame(f"register({name}, {machine})", outcome.status)

    def publish(self, machine: str, payload: str) -> SimulationFrame:
        before = len(self.transport.sent)
        outcome = self.engine.handle(f"{TOPIC_PREFIX}/{machine}", payload)
        sent = len(self.transport.sent) - before
        result = outcome.action.value + (f", {sent} notified" if sent else "")
        return self._record_frame(f"publish({machine}, {payload})", result)

    def summary(self) -> None:
        total_checks = sum(len(f.invariant_results) for f in self.frames)
        failures = [
            (f, r) for f in self.frames for r in f.invariant_results if not r.passed
        ]
        print(f"Frames: {len(self.frames)}")
        print(f"Invariant checks: {total_checks}")
        print(f"Invariant failures: {len(failures)}")
        print(f"Notifications: {self.transport.sent}")
        if not failures:
            print("✓ All invariants maintained throughout simulation")
        for f, r in failures:
            print(f"  ✗ Frame {f.step}: {r.name} - {r.message}")


def run_end_to_end_simulation() -> None:
    """Register before a cycle, then run the cycle to completion."""
    print("=" * 60)
    print("END-TO-END: REGISTER, START, FINISH")
    print("=" * 60)
    print()

    sim = Simulator()
    try:
        print(sim.register("Bob", "dryer"))
        print("  Note: no dryer cycle yet, Bob waits for the next one")
        print()
        print(sim.publish("dryer", "started_at=2024-01-01T10:00:00Z"))
        print("  Note: Bob's registration attached to the new cycle")
        print()
        print(sim.register("Alice Smith", "dryer"))
        print("  Note: Alice joins the running cycle directly")
        print()
        print(sim.publish("dryer", "finished_at=2024-01-01T11:00:00Z"))
        print()
        sim.summary()
    finally:
        sim.cleanup()


def run_replay_simulation() -> None:
    """Duplicate, stale and malformed messages change nothing."""
    print()
    print("=" * 60)
    print("REPLAYS AND NOISE")
    print("=" * 60)
    print()

    sim = Simulator()
    try:
        print(sim.publish("washer", "finished_at=2024-01-01T08:00:00Z"))
        print(sim.register("Carol", "washer"))
        print(sim.publish("washer", "started_at=2024-01-01T09:00:00Z"))
        print(sim.publish("washer", "started_at=2024-01-01T09:00:05Z"))
        print(sim.register("Carol", "washer"))
        print(sim.publish("washer", "started_at=not-a-time"))
        print(sim.publish("washer", "finished_at=2024-01-01T10:00:00Z"))
        print(sim.publish("washer", "finished_at=2024-01-01T10:00:00Z"))
        print(sim.publish("washer", "started_at=2024-01-01T09:00:00Z"))
        print()
        sim.summary()
    finally:
        sim.cleanup()


if __name__ == "__main__":
    run_end_to_end_simulation()
    run_replay_simulation()
