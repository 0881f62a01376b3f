"""
Laundry-notify invariants: runtime checks over the stored state.

These assertions enforce the correlation contract:
- At most one open cycle per machine type
- At most one outstanding registration per user and machine type
- A registration only ever points at a cycle of its own machine type
- Cycles never finish before they start

Run with: python -m laundry_notify.invariants --db data.db
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

from laundry_notify.db import Database
from laundry_notify.models import MachineType, from_rfc3339


@dataclass
class InvariantResult:
    """Result of an invariant check."""
    name: str
    passed: bool
    message: str
    evidence: Optional[dict] = None


def check_one_open_cycle(db: Database) -> List[InvariantResult]:
    """INV1: for every machine type, at most one cycle has no finish time."""
    results = []
    with db.read() as conn:
        for machine in MachineType:
            rows = conn.execute(
                "SELECT id FROM cycles WHERE type = ? AND finished_at IS NULL ORDER BY id",
                (machine.value,),
            ).fetchall()
            open_ids = [int(r["id"]) for r in rows]
            if len(open_ids) <= 1:
                results.append(InvariantResult(
                    name=f"inv_one_open_cycle:{machine.value}",
                    passed=True,
                    message=f"{len(open_ids)} open cycle(s)",
                ))
            else:
                results.append(InvariantResult(
                    name=f"inv_one_open_cycle:{machine.value}",
                    passed=False,
                    message=f"{len(open_ids)} open cycles",
                    evidence={"open_cycle_ids": open_ids},
                ))
    return results


def check_outstanding_unique(db: Database) -> List[InvariantResult]:
    """INV2: a user holds at most one outstanding registration per machine type."""
    with db.read() as conn:
        dupes = conn.execute(
            """SELECT r.user_id AS user_id, r.type AS type, COUNT(*) AS cnt,
                      GROUP_CONCAT(r.id) AS reg_ids
               FROM registrations r
               LEFT JOIN cycles c ON c.id = r.cycle_id
               WHERE r.cycle_id IS NULL OR c.finished_at IS NULL
               GROUP BY r.user_id, r.type
               HAVING COUNT(*) > 1"""
        ).fetchall()

    if not dupes:
        return [InvariantResult(
            name="inv_outstanding_unique",
            passed=True,
            message="No duplicate outstanding registrations",
        )]
    return [
        InvariantResult(
            name=f"inv_outstanding_unique:{d['user_id']}:{d['type']}",
            passed=False,
            message=f"{d['cnt']} outstanding registrations",
            evidence={"user_id": d["user_id"], "type": d["type"], "registration_ids": d["reg_ids"]},
        )
        for d in dupes
    ]


def check_registration_cycle_type(db: Database) -> List[InvariantResult]:
    """INV3: attached registrations share their cycle's machine type."""
    with db.read() as conn:
        rows = conn.execute(
            """SELECT r.id AS reg_id, r.type AS reg_type, c.id AS cycle_id, c.type AS cycle_type
               FROM registrations r
               JOIN cycles c ON c.id = r.cycle_id
               WHERE r.type != c.type"""
        ).fetchall()

    if not rows:
        return [InvariantResult(
            name="inv_registration_cycle_type",
            passed=True,
            message="All attached registrations match their cycle type",
        )]
    return [
        InvariantResult(
            name=f"inv_registration_cycle_type:{r['reg_id']}",
            passed=False,
            message=f"{r['reg_type']} registration attached to {r['cycle_type']} cycle",
            evidence={"registration_id": r["reg_id"], "cycle_id": r["cycle_id"]},
        )
        for r in rows
    ]


def check_cycle_order(db: Database) -> List[InvariantResult]:
    """INV4: finished_at, when present, is not before started_at."""
    results = []
    with db.read() as conn:
        rows = conn.execute(
            "SELECT id, started_at, finished_at FROM cycles WHERE finished_at IS NOT NULL"
        ).fetchall()

    bad = [
        r for r in rows
        if from_rfc3339(r["finished_at"]) < from_rfc3339(r["started_at"])
    ]
    if not bad:
        results.append(InvariantResult(
            name="inv_cycle_order",
            passed=True,
            message=f"Cycle timestamps ordered ({len(rows)} checked)",
        ))
    for r in bad:
        results.append(InvariantResult(
            name=f"inv_cycle_order:{r['id']}",
            passed=False,
            message="Cycle finished before it started",
            evidence={"started_at": r["started_at"], "finished_at": r["finished_at"]},
        ))
    return results


def check_all_invariants(db: Database) -> Tuple[int, int, List[InvariantResult]]:
    """Run all invariant checks. Returns (passed, failed, results)."""
    all_results = []

    all_results.extend(check_one_open_cycle(db))
    all_results.extend(check_outstanding_unique(db))
    all_results.extend(check_registration_cycle_type(db))
    all_results.extend(check_cycle_order(db))

    passed = sum(1 for r in all_results if r.passed)
    failed = sum(1 for r in all_results if not r.passed)

    return passed, failed, all_results


def main() -> None:
    import argparse

    ap = argparse.ArgumentParser(description="Check laundry-notify invariants")
    ap.add_argument("--db", required=True, help="SQLite database path")
    ap.add_argument("--verbose", "-v", action="store_true", help="Show all results")
    args = ap.parse_args()

    db = Database(args.db)
    passed, failed, results = check_all_invariants(db)

    print(f"Invariant check: {passed} passed, {failed} failed")

    for r in results:
        if not r.passed or args.verbose:
            status = "PASS" if r.passed else "FAIL"
            print(f"  [{status}] {r.name}: {r.message}")
            if r.evidence:
                print(f"         evidence: {json.dumps(r.evidence)}")

    sys.exit(0 if failed == 0 else 1)


if __name__ == "__main__":
    main()
