"""
Laundry-notify HTTP server and process bootstrap.

Single-file front end using stdlib http.server; the MQTT listener and the
message processor run on background threads.
"""

from __future__ import annotations

import argparse
import html
import json
import logging
import os
import queue
import signal
import sys
import threading
import urllib.parse
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from laundry_notify import __version__
from laundry_notify.bus import BusConfig, BusListener, MessageProcessor
from laundry_notify.db import CycleStore, Database, RegistrationStore, UserStore
from laundry_notify.dispatch import NotificationDispatcher, user_topic
from laundry_notify.engine import CorrelationEngine
from laundry_notify.errors import LaundryNotifyError, StoreError, ValidationError
from laundry_notify.intake import RegistrationIntake
from laundry_notify.models import (
    AlreadyRegistered,
    Cycle,
    MachineType,
    Registered,
    RegistrationOutcome,
    User,
    to_rfc3339,
)
from laundry_notify.notify import DEFAULT_SERVER, NtfyConfig, NtfyNotifier

log = logging.getLogger(__name__)

DEV_ENVS = ("dev", "development")


@dataclass(frozen=True)
class Config:
    """Process configuration."""
    env: str
    db_path: str
    listen: str
    port: int
    bus: BusConfig
    ntfy: NtfyConfig
    queue_size: int
    connect_timeout_s: float

    @property
    def is_dev(self) -> bool:
        return self.env.lower() in DEV_ENVS


# === Rendering ===

PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><title>{title}</title></head>
<body>
<h1>{title}</h1>
{body}
</body></html>
"""


def _page(title: str, body: str) -> str:
    return PAGE.format(title=html.escape(title), body=body)


def describe_cycle(machine: MachineType, cycle: Optional[Cycle]) -> str:
    if cycle is None:
        return f"{machine.title}: no cycles yet"
    if cycle.is_open:
        return f"{machine.title}: running since {to_rfc3339(cycle.started_at)}"
    return f"{machine.title}: finished at {to_rfc3339(cycle.finished_at)}"


def user_list_html(users: List[User]) -> str:
    if not users:
        return "<ul class=\"users\"></ul>"
    items = "".join(f"<li>{html.escape(u.name)}</li>" for u in users)
    return f"<ul class=\"users\">{items}</ul>"


REGISTER_FORM = """<form method="post" action="/register">
<input name="name" placeholder="Your name">
<select name="type"><option value="washer">Washer</option><option value="dryer">Dryer</option></select>
<button type="submit">Notify me</button>
</form>"""


def outcome_payload(
    outcome: RegistrationOutcome, base_topic: str, ntfy_server: Optional[str]
) -> Tuple[int, Dict[str, Optional[str]]]:
    """Map an intake outcome onto an HTTP status and a JSON-able body."""
    if isinstance(outcome, (Registered, AlreadyRegistered)):
        topic = f"{base_topic}-{user_topic(outcome.user.name)}"
        url = f"{(ntfy_server or DEFAULT_SERVER).rstrip('/')}/{topic}"
        if outcome.cycle is not None:
            when = f"the running {outcome.cycle.machine_type.value} cycle"
        elif outcome.registration is not None:
            when = f"the next {outcome.registration.machine_type.value} cycle"
        else:
            when = "the next cycle"
        if isinstance(outcome, Registered):
            detail = f"{outcome.user.name} will be notified when {when} finishes"
        else:
            detail = f"{outcome.user.name} is already registered for {when}"
        return 200, {"status": outcome.status, "detail": detail, "topic": topic, "url": url}
    code = 400 if outcome.code == ValidationError.code else 500
    return code, {"status": outcome.status, "detail": outcome.reason, "topic": None, "url": None}


# === HTTP ===

class Handler(BaseHTTPRequestHandler):
    """HTTP request handler for the registration front end."""

    server_version = f"laundry-notify/{__version__}"

    def log_message(self, format: str, *args) -> None:
        log.debug("%s - %s", self.address_string(), format % args)

    def _send(self, code: int, content_type: str, s: str) -> None:
        b = s.encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", f"{content_type}; charset=utf-8")
        self.send_header("Content-Length", str(len(b)))
        self.end_headers()
        self.wfile.write(b)

    def _text(self, code: int, s: str) -> None:
        self._send(code, "text/plain", s)

    def _html(self, code: int, s: str) -> None:
        self._send(code, "text/html", s)

    def _json(self, code: int, obj: dict) -> None:
        self._send(code, "application/json", json.dumps(obj))

    def _route(self) -> Tuple[str, Dict[str, str]]:
        parts = urllib.parse.urlsplit(self.path)
        params = dict(urllib.parse.parse_qsl(parts.query, keep_blank_values=True))
        return parts.path.rstrip("/") or "/", params

    def _read_form(self) -> Dict[str, str]:
        length = int(self.headers.get("Content-Length", "0") or "0")
        raw = self.rfile.read(length).decode("utf-8", errors="replace")
        return dict(urllib.parse.parse_qsl(raw, keep_blank_values=True))

    def do_GET(self) -> None:
        path, params = self._route()
        if path == "/ping":
            return self._text(200, "pong\n")
        if path == "/":
            return self._guard(self._handle_index)
        if path == "/register":
            return self._guard(self._handle_register, params, False)
        if path == "/register.json":
            return self._guard(self._handle_register, params, True)
        if path == "/search.json":
            return self._guard(self._handle_search_json, params)
        return self._text(404, "not found\n")

    def do_POST(self) -> None:
        path, params = self._route()
        if path in ("/register", "/register.json", "/search", "/search.json"):
            params.update(self._read_form())
        if path == "/search":
            return self._guard(self._handle_search, params)
        if path == "/search.json":
            return self._guard(self._handle_search_json, params)
        if path == "/register":
            return self._guard(self._handle_register, params, False)
        if path == "/register.json":
            return self._guard(self._handle_register, params, True)
        return self._text(404, "not found\n")

    def _guard(self, fn, *args) -> None:
        try:
            fn(*args)
        except LaundryNotifyError as e:
            log.error("request %s %s failed: [%s] %s", self.command, self.path, e.code, e)
            self._text(500, f"error: {e.message}\n")

    def _handle_index(self) -> None:
        cycles = self.server.cycles
        lines = "".join(
            f"<li>{html.escape(describe_cycle(m, cycles.find_most_recent(m)))}</li>"
            for m in MachineType
        )
        users = self.server.intake.search("")
        body = (
            f"<ul class=\"machines\">{lines}</ul>\n"
            f"{REGISTER_FORM}\n"
            f"<h2>Recent users</h2>\n{user_list_html(users)}"
        )
        self._html(200, _page("Laundry Notify", body))

    def _handle_search(self, params: Dict[str, str]) -> None:
        users = self.server.intake.search(params.get("name", ""))
        self._html(200, user_list_html(users))

    def _handle_search_json(self, params: Dict[str, str]) -> None:
        users = self.server.intake.search(params.get("name", ""))
        self._json(200, {
            "users": [
                {"name": u.name, "created_at": to_rfc3339(u.created_at)}
                for u in users
            ],
        })

    def _handle_register(self, params: Dict[str, str], as_json: bool) -> None:
        name = params.get("name", "")
        machine = params.get("type", "")
        outcome = self.server.intake.register(name, machine)
        ntfy = self.server.cfg.ntfy
        code, payload = outcome_payload(outcome, ntfy.base_topic, ntfy.server)
        if as_json:
            return self._json(code, payload)

        body = f"<p class=\"{payload['status']}\">{html.escape(payload['detail'] or '')}</p>"
        if payload["url"]:
            url = html.escape(payload["url"])
            body += f"\n<p>Subscribe to <a href=\"{url}\">{html.escape(payload['topic'])}</a> in the ntfy app.</p>"
        title = "Registered" if code == 200 else "Registration failed"
        self._html(code, _page(title, body))


class LaundryHTTP(ThreadingHTTPServer):
    """Threaded HTTP server with attached intake and stores."""

    daemon_threads = True

    def __init__(
        self,
        addr: tuple,
        handler: type,
        intake: RegistrationIntake,
        cycles: CycleStore,
        cfg: Config,
    ) -> None:
        super().__init__(addr, handler)
        self.intake = intake
        self.cycles = cycles
        self.cfg = cfg


# === Bootstrap ===

def build_parser(env: Dict[str, str]) -> argparse.ArgumentParser:
    get = env.get
    ap = argparse.ArgumentParser(description="Laundry cycle notifier")
    ap.add_argument("--env-file", default="data/.env", help="dotenv file loaded before flags")
    ap.add_argument("--env", default=get("ENV", "production"), help="dev|development enables debug logging")
    ap.add_argument("--db", default=get("DB_DSN"), help="SQLite database path (DB_DSN)")
    ap.add_argument("--listen", default=get("HTTP_LISTEN", "127.0.0.1"), help="Listen address")
    ap.add_argument("--port", type=int, default=get("HTTP_PORT", "8080"), help="Listen port")
    ap.add_argument("--mqtt-url", default=get("MQTT_URL"), help="Broker URL (MQTT_URL)")
    ap.add_argument("--mqtt-topic", default=get("MQTT_TOPIC"), help="Topic filter (MQTT_TOPIC)")
    ap.add_argument("--mqtt-client-id", default=get("MQTT_CLIENT_ID"), help="Client identifier")
    ap.add_argument("--mqtt-username", default=get("MQTT_USERNAME"), help="Broker username")
    ap.add_argument("--mqtt-password", default=get("MQTT_PASSWORD"), help="Broker password")
    ap.add_argument("--ntfy-server", default=get("NTFY_SERVER", DEFAULT_SERVER),
                    help="ntfy server; empty string = dev mode (log only)")
    ap.add_argument("--ntfy-base-topic", default=get("NTFY_BASE_TOPIC"), help="Per-user topic prefix")
    ap.add_argument("--ntfy-user", default=get("NTFY_USER"), help="ntfy basic-auth user")
    ap.add_argument("--ntfy-pass", default=get("NTFY_PASS"), help="ntfy basic-auth password")
    ap.add_argument("--queue-size", type=int, default=get("QUEUE_SIZE", "100"),
                    help="Max buffered bus messages")
    ap.add_argument("--connect-timeout", type=float, default=30.0,
                    help="Seconds to wait for the first broker connection")
    return ap


REQUIRED = (
    ("db", "--db / DB_DSN"),
    ("mqtt_url", "--mqtt-url / MQTT_URL"),
    ("mqtt_topic", "--mqtt-topic / MQTT_TOPIC"),
    ("ntfy_base_topic", "--ntfy-base-topic / NTFY_BASE_TOPIC"),
)


def load_config(argv: Optional[List[str]] = None) -> Config:
    """Build the config from dotenv file, environment and flags (flags win)."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--env-file", default="data/.env")
    known, _ = pre.parse_known_args(argv)
    if load_dotenv(known.env_file, override=False):
        log.debug("loaded %s", known.env_file)

    ap = build_parser(dict(os.environ))
    args = ap.parse_args(argv)
    for attr, label in REQUIRED:
        if not getattr(args, attr):
            ap.error(f"{label} is required")
    if args.queue_size < 1:
        ap.error("--queue-size must be >= 1")

    return Config(
        env=args.env,
        db_path=args.db,
        listen=args.listen,
        port=args.port,
        bus=BusConfig(
            url=args.mqtt_url,
            topic=args.mqtt_topic,
            client_id=args.mqtt_client_id,
            username=args.mqtt_username,
            password=args.mqtt_password,
        ),
        ntfy=NtfyConfig(
            server=args.ntfy_server or None,
            base_topic=args.ntfy_base_topic,
            user=args.ntfy_user,
            password=args.ntfy_pass,
        ),
        queue_size=args.queue_size,
        connect_timeout_s=args.connect_timeout,
    )


def open_database(path: str) -> Database:
    parent = os.path.dirname(path)
    if parent and path != ":memory:":
        os.makedirs(parent, mode=0o700, exist_ok=True)
    db = Database(path)
    db.init_db()
    return db


def main(argv: Optional[List[str]] = None) -> None:
    cfg = load_config(argv)
    logging.basicConfig(
        level=logging.DEBUG if cfg.is_dev else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("starting laundry-notify %s (env=%s)", __version__, cfg.env)

    try:
        db = open_database(cfg.db_path)
    except (StoreError, OSError) as e:
        log.critical("cannot open database %s: %s", cfg.db_path, e)
        sys.exit(1)

    cycles = CycleStore(db)
    users = UserStore(db)
    registrations = RegistrationStore(db)
    dispatcher = NotificationDispatcher(registrations, NtfyNotifier(cfg.ntfy))
    engine = CorrelationEngine(db, cycles, registrations, dispatcher)
    intake = RegistrationIntake(db, users, cycles, registrations)
    if not cfg.ntfy.server:
        log.info("no ntfy server configured; notifications will only be logged")

    inbox: "queue.Queue" = queue.Queue(maxsize=cfg.queue_size)
    stop_evt = threading.Event()

    listener = BusListener(cfg.bus, inbox, stop_evt)
    listener.start()
    if not listener.ready.wait(cfg.connect_timeout_s) or listener.boot_error is not None:
        log.critical("MQTT broker %s unreachable: %s", cfg.bus.url, listener.boot_error or "timeout")
        listener.stop()
        sys.exit(1)

    processor = MessageProcessor(engine, inbox, stop_evt)
    processor.start()

    httpd = LaundryHTTP((cfg.listen, cfg.port), Handler, intake, cycles, cfg)

    def _sig(*_):
        log.info("shutting down...")
        listener.stop()
        threading.Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT, _sig)
    signal.signal(signal.SIGTERM, _sig)

    log.info("laundry-notify listening on %s:%d", cfg.listen, cfg.port)
    try:
        httpd.serve_forever()
    finally:
        stop_evt.set()
        processor.join(timeout=10)
        listener.join(timeout=5)
        httpd.server_close()


if __name__ == "__main__":
    main()
