"""Tests for the bus listener helpers and the message processor."""

import asyncio
import os
import queue
import tempfile
import threading
import unittest
from unittest import mock

from laundry_notify.bus import (
    BusConfig,
    BusListener,
    MessageProcessor,
    broker_address,
    payload_bytes,
)
from laundry_notify.db import CycleStore, Database, RegistrationStore
from laundry_notify.dispatch import NotificationDispatcher
from laundry_notify.engine import Action, CorrelationEngine
from laundry_notify.errors import ValidationError
from laundry_notify.models import MachineType
from laundry_notify.notify import RecordingTransport


class TestBrokerAddress(unittest.TestCase):
    def test_schemes(self) -> None:
        self.assertEqual(broker_address("tcp://broker.local:1884"), ("broker.local", 1884, False))
        self.assertEqual(broker_address("mqtt://broker.local"), ("broker.local", 1883, False))
        self.assertEqual(broker_address("mqtts://broker.local"), ("broker.local", 8883, True))
        self.assertEqual(broker_address("ssl://broker.local:9000"), ("broker.local", 9000, True))
        self.assertEqual(broker_address("broker.local"), ("broker.local", 1883, False))

    def test_missing_host(self) -> None:
        with self.assertRaises(ValidationError):
            broker_address("tcp://")

    def test_payload_bytes(self) -> None:
        self.assertEqual(payload_bytes(None), b"")
        self.assertEqual(payload_bytes(bytearray(b"x=1")), b"x=1")
        self.assertEqual(payload_bytes("started_at"), b"started_at")
        self.assertEqual(payload_bytes(42), b"42")


class TestBusListenerEnqueue(unittest.TestCase):
    def test_waits_for_room_in_full_queue(self) -> None:
        """A full queue holds the message until the consumer makes room."""
        q = queue.Queue(maxsize=1)
        q.put(("first", b""))
        listener = BusListener(BusConfig(url="tcp://localhost", topic="home/laundry/+"), q, threading.Event())

        def drain() -> None:
            q.get()
            q.task_done()

        timer = threading.Timer(0.2, drain)
        timer.start()
        try:
            asyncio.run(listener._enqueue("second", b"payload"))
        finally:
            timer.cancel()
        self.assertEqual(q.get_nowait(), ("second", b"payload"))

    def test_stop_abandons_blocked_put(self) -> None:
        q = queue.Queue(maxsize=1)
        q.put(("first", b""))
        stop = threading.Event()
        stop.set()
        listener = BusListener(BusConfig(url="tcp://localhost", topic="t"), q, stop)
        asyncio.run(listener._enqueue("second", b""))
        self.assertEqual(q.qsize(), 1)

    def test_client_settings(self) -> None:
        cfg = BusConfig(
            url="mqtts://broker.local",
            topic="home/laundry/+",
            client_id="laundry-notify",
            username="hub",
            password="pw",
        )
        listener = BusListener(cfg, queue.Queue(), threading.Event())
        with mock.patch("laundry_notify.bus.aiomqtt.Client") as client:
            listener._client()
        args, kwargs = client.call_args
        self.assertEqual(args, ("broker.local", 8883))
        self.assertEqual(kwargs["identifier"], "laundry-notify")
        self.assertEqual(kwargs["username"], "hub")
        self.assertIsNotNone(kwargs["tls_context"])


class TestMessageProcessor(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        self.tmp.close()
        self.db = Database(self.tmp.name)
        self.db.init_db()
        self.cycles = CycleStore(self.db)
        registrations = RegistrationStore(self.db)
        self.engine = CorrelationEngine(
            self.db,
            self.cycles,
            registrations,
            NotificationDispatcher(registrations, RecordingTransport()),
        )
        self.inbox = queue.Queue(maxsize=10)
        self.stop = threading.Event()

    def tearDown(self) -> None:
        self.stop.set()
        for suffix in ("", "-wal", "-shm"):
            try:
                os.unlink(self.tmp.name + suffix)
            except OSError:
                pass

    def test_process_in_order(self) -> None:
        proc = MessageProcessor(self.engine, self.inbox, self.stop, poll_s=0.05)
        self.inbox.put(("home/laundry/washer", b"started_at=2024-01-01T10:00:00Z"))
        self.inbox.put(("home/laundry/washer", b"not a message"))
        self.inbox.put(("home/laundry/washer", b"finished_at=2024-01-01T11:00:00Z"))
        proc.start()
        self.inbox.join()
        self.stop.set()
        proc.join(timeout=2)

        self.assertFalse(proc.is_alive())
        self.assertTrue(self.cycles.find_most_recent(MachineType.WASHER).is_finished)

    def test_stop_reports_unprocessed_messages(self) -> None:
        """Messages still queued at shutdown are counted in the log."""
        self.inbox.put(("home/laundry/washer", b"started_at=2024-01-01T10:00:00Z"))
        self.inbox.put(("home/laundry/washer", b"finished_at=2024-01-01T11:00:00Z"))
        self.stop.set()
        proc = MessageProcessor(self.engine, self.inbox, self.stop)
        with self.assertLogs("laundry_notify.bus", level="WARNING") as logs:
            proc.run()
        self.assertIn("2 queued messages unprocessed", logs.output[0])

    def test_unexpected_error_does_not_escape(self) -> None:
        proc = MessageProcessor(self.engine, self.inbox, self.stop)
        self.inbox.put(("t", b"p"))
        self.inbox.get()
        with mock.patch.object(self.engine, "handle", side_effect=RuntimeError("boom")):
            with self.assertLogs("laundry_notify.bus", level="ERROR"):
                self.assertIsNone(proc.process("t", b"p"))
        self.assertEqual(self.inbox.unfinished_tasks, 0)

    def test_process_returns_outcome(self) -> None:
        proc = MessageProcessor(self.engine, self.inbox, self.stop)
        self.inbox.put(("home/laundry/dryer", b"started_at=2024-01-01T10:00:00Z"))
        topic, payload = self.inbox.get()
        out = proc.process(topic, payload)
        self.assertEqual(out.action, Action.CYCLE_STARTED)


if __name__ == "__main__":
    unittest.main()
