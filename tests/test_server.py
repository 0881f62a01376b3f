"""Tests for the HTTP front end and config loading."""

import json
import os
import tempfile
import threading
import unittest
import urllib.parse
import urllib.request
from unittest import mock
from urllib.error import HTTPError

from laundry_notify.bus import BusConfig
from laundry_notify.db import CycleStore, RegistrationStore, UserStore
from laundry_notify.intake import RegistrationIntake
from laundry_notify.models import (
    MachineType,
    Registered,
    Registration,
    RegistrationError,
    User,
    from_rfc3339,
)
from laundry_notify.notify import NtfyConfig
from laundry_notify.server import (
    Config,
    Handler,
    LaundryHTTP,
    load_config,
    open_database,
    outcome_payload,
)


class TestLoadConfig(unittest.TestCase):
    BASE = [
        "--env-file", "/nonexistent/.env",
        "--db", "/tmp/laundry.db",
        "--mqtt-url", "tcp://broker:1883",
        "--mqtt-topic", "home/laundry/+",
        "--ntfy-base-topic", "laundry",
    ]

    def test_flags(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            cfg = load_config(self.BASE + ["--port", "9090"])
        self.assertEqual(cfg.db_path, "/tmp/laundry.db")
        self.assertEqual(cfg.port, 9090)
        self.assertEqual(cfg.bus.topic, "home/laundry/+")
        self.assertEqual(cfg.ntfy.server, "https://ntfy.sh")
        self.assertEqual(cfg.queue_size, 100)
        self.assertFalse(cfg.is_dev)

    def test_environment_defaults(self) -> None:
        env = {
            "ENV": "dev",
            "DB_DSN": "/tmp/env.db",
            "MQTT_URL": "tcp://broker",
            "MQTT_TOPIC": "home/laundry/+",
            "MQTT_CLIENT_ID": "laundry-notify",
            "NTFY_SERVER": "",
            "NTFY_BASE_TOPIC": "house",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            cfg = load_config(["--env-file", "/nonexistent/.env"])
        self.assertTrue(cfg.is_dev)
        self.assertEqual(cfg.db_path, "/tmp/env.db")
        self.assertEqual(cfg.bus.client_id, "laundry-notify")
        self.assertIsNone(cfg.ntfy.server)
        self.assertEqual(cfg.ntfy.base_topic, "house")

    def test_dotenv_file(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, ".env")
            with open(path, "w") as f:
                f.write(
                    "DB_DSN=/tmp/dotenv.db\n"
                    "MQTT_URL=tcp://broker\n"
                    "MQTT_TOPIC=home/laundry/+\n"
                    "NTFY_BASE_TOPIC=house\n"
                )
            with mock.patch.dict(os.environ, {}, clear=True):
                cfg = load_config(["--env-file", path, "--db", "/tmp/flag.db"])
        self.assertEqual(cfg.db_path, "/tmp/flag.db")
        self.assertEqual(cfg.ntfy.base_topic, "house")

    def test_missing_required(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with mock.patch("sys.stderr"):
                with self.assertRaises(SystemExit) as cm:
                    load_config(["--env-file", "/nonexistent/.env", "--db", "x.db"])
        self.assertEqual(cm.exception.code, 2)

    def test_bad_numeric_environment_is_usage_error(self) -> None:
        for key in ("HTTP_PORT", "QUEUE_SIZE"):
            with self.subTest(key=key):
                with mock.patch.dict(os.environ, {key: "lots"}, clear=True):
                    with mock.patch("sys.stderr"):
                        with self.assertRaises(SystemExit) as cm:
                            load_config(self.BASE)
                self.assertEqual(cm.exception.code, 2)

    def test_numeric_environment_defaults(self) -> None:
        with mock.patch.dict(os.environ, {"HTTP_PORT": "9000", "QUEUE_SIZE": "7"}, clear=True):
            cfg = load_config(self.BASE)
        self.assertEqual(cfg.port, 9000)
        self.assertEqual(cfg.queue_size, 7)


class TestOutcomePayload(unittest.TestCase):
    def test_subscribe_url_is_the_users_own_topic(self) -> None:
        user = User(id=2, name="Bob?x=1", created_at=from_rfc3339("2024-01-01T10:00:00Z"))
        reg = Registration(
            id=1, user_id=2, machine_type=MachineType.DRYER, cycle_id=None,
            created_at=user.created_at,
        )
        code, body = outcome_payload(Registered(user, reg, None), "laundry", "https://ntfy.example.org")
        self.assertEqual(code, 200)
        self.assertEqual(body["topic"], "laundry-Bob-3fx-3d1")
        self.assertEqual(body["url"], "https://ntfy.example.org/laundry-Bob-3fx-3d1")

    def test_error_codes(self) -> None:
        code, body = outcome_payload(RegistrationError("name required", "invalid"), "laundry", None)
        self.assertEqual(code, 400)
        self.assertEqual(body["status"], "error")
        code, _ = outcome_payload(RegistrationError("disk", "store"), "laundry", None)
        self.assertEqual(code, 500)


class TestHTTP(unittest.TestCase):
    def setUp(self) -> None:
        self.dir = tempfile.TemporaryDirectory()
        db = open_database(os.path.join(self.dir.name, "data", "laundry.db"))
        self.cycles = CycleStore(db)
        intake = RegistrationIntake(db, UserStore(db), self.cycles, RegistrationStore(db))
        cfg = Config(
            env="test",
            db_path=db.db_path,
            listen="127.0.0.1",
            port=0,
            bus=BusConfig(url="tcp://localhost", topic="home/laundry/+"),
            ntfy=NtfyConfig(server="https://ntfy.example.org", base_topic="laundry"),
            queue_size=10,
            connect_timeout_s=1.0,
        )
        self.httpd = LaundryHTTP(("127.0.0.1", 0), Handler, intake, self.cycles, cfg)
        self.base = f"http://127.0.0.1:{self.httpd.server_address[1]}"
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)
        self.thread.start()

    def tearDown(self) -> None:
        self.httpd.shutdown()
        self.httpd.server_close()
        self.thread.join(timeout=5)
        self.dir.cleanup()

    def get(self, path: str):
        try:
            with urllib.request.urlopen(self.base + path, timeout=5) as r:
                return r.status, r.read().decode("utf-8")
        except HTTPError as e:
            return e.code, e.read().decode("utf-8")

    def post(self, path: str, data: dict):
        body = urllib.parse.urlencode(data).encode("utf-8")
        req = urllib.request.Request(self.base + path, data=body, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=5) as r:
                return r.status, r.read().decode("utf-8")
        except HTTPError as e:
            return e.code, e.read().decode("utf-8")

    def test_ping(self) -> None:
        self.assertEqual(self.get("/ping"), (200, "pong\n"))

    def test_unknown_path(self) -> None:
        self.assertEqual(self.get("/nope")[0], 404)

    def test_register_json(self) -> None:
        code, body = self.post("/register.json", {"name": "Alice Smith", "type": "dryer"})
        self.assertEqual(code, 200)
        out = json.loads(body)
        self.assertEqual(out["status"], "registered")
        self.assertEqual(out["topic"], "laundry-Alice_Smith")
        self.assertEqual(out["url"], "https://ntfy.example.org/laundry-Alice_Smith")

        code, body = self.post("/register.json", {"name": "Alice Smith", "type": "dryer"})
        self.assertEqual(json.loads(body)["status"], "already_registered")

    def test_register_bad_type(self) -> None:
        code, body = self.post("/register.json", {"name": "Bob", "type": "oven"})
        self.assertEqual(code, 400)
        self.assertEqual(json.loads(body)["status"], "error")

    def test_register_html_escapes_name(self) -> None:
        code, body = self.get("/register?name=%3Cb%3EEve%3C%2Fb%3E&type=washer")
        self.assertEqual(code, 200)
        self.assertIn("&lt;b&gt;Eve", body)
        self.assertNotIn("<b>Eve", body)

    def test_index_shows_machines_and_users(self) -> None:
        self.cycles.create(MachineType.WASHER, from_rfc3339("2024-01-01T10:00:00Z"))
        self.post("/register", {"name": "Bob", "type": "washer"})
        code, body = self.get("/")
        self.assertEqual(code, 200)
        self.assertIn("Washer: running since 2024-01-01T10:00:00Z", body)
        self.assertIn("Dryer: no cycles yet", body)
        self.assertIn("<li>Bob</li>", body)

    def test_search(self) -> None:
        for name in ("Bob", "Bobby", "Alice"):
            self.post("/register.json", {"name": name, "type": "washer"})
        code, body = self.post("/search", {"name": "Bo"})
        self.assertEqual(code, 200)
        self.assertIn("Bobby", body)
        self.assertNotIn("Alice", body)

        code, body = self.post("/search.json", {"name": "Ali"})
        self.assertEqual([u["name"] for u in json.loads(body)["users"]], ["Alice"])
        code, body = self.get("/search.json?name=Bob")
        self.assertEqual(len(json.loads(body)["users"]), 2)


if __name__ == "__main__":
    unittest.main()
