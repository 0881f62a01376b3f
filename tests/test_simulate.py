"""Smoke tests for the scenario simulator."""

import io
import unittest
from contextlib import redirect_stdout

from laundry_notify import simulate


class TestSimulator(unittest.TestCase):
    def test_frames_record_invariants(self) -> None:
        sim = simulate.Simulator()
        try:
            sim.register("Bob", "dryer")
            sim.publish("dryer", "started_at=2024-01-01T10:00:00Z")
            frame = sim.publish("dryer", "finished_at=2024-01-01T11:00:00Z")
        finally:
            sim.cleanup()
        self.assertEqual(frame.result, "cycle_finished, 1 notified")
        self.assertEqual(len(sim.frames), 3)
        self.assertTrue(all(r.passed for f in sim.frames for r in f.invariant_results))
        self.assertEqual(sim.transport.sent, [("Bob", "Dryer finished", "Your laundry is ready!")])

    def test_scenarios_run(self) -> None:
        out = io.StringIO()
        with redirect_stdout(out):
            simulate.run_end_to_end_simulation()
            simulate.run_replay_simulation()
        text = out.getvalue()
        self.assertIn("All invariants maintained", text)
        self.assertNotIn("Invariant failures: 1", text)


if __name__ == "__main__":
    unittest.main()
