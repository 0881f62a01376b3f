"""
Laundry-notify message bus: MQTT listener feeding a single-consumer processor.

    broker --aiomqtt--> BusListener --bounded FIFO--> MessageProcessor --> CorrelationEngine

The listener thread only decodes and enqueues; the processor thread is the
only caller of the engine, so messages are handled one at a time in
arrival order and per-machine state transitions never race.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import ssl
import threading
import urllib.parse
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import aiomqtt

from laundry_notify.engine import CorrelationEngine, Outcome
from laundry_notify.errors import ValidationError

log = logging.getLogger(__name__)

BusItem = Tuple[str, bytes]  # (topic, raw payload)

TLS_SCHEMES = ("ssl", "tls", "mqtts")


@dataclass(frozen=True)
class BusConfig:
    """MQTT connection settings."""
    url: str           # tcp://host:1883, mqtts://host:8883 or host[:port]
    topic: str         # subscription filter, e.g. home/laundry/+
    client_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    reconnect_max_s: float = 30.0


def broker_address(url: str) -> Tuple[str, int, bool]:
    """Split a broker URL into (host, port, use_tls)."""
    parts = urllib.parse.urlsplit(url if "://" in url else f"tcp://{url}")
    if not parts.hostname:
        raise ValidationError(f"MQTT URL has no host: {url!r}")
    tls = parts.scheme.lower() in TLS_SCHEMES
    port = parts.port or (8883 if tls else 1883)
    return parts.hostname, port, tls


def payload_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")


class BusListener(threading.Thread):
    """
    Subscribes to the laundry topic and enqueues every message.

    The first connection must succeed (ready is set, boot_error stays None);
    after that, lost connections are retried with capped exponential backoff.
    """

    def __init__(
        self,
        config: BusConfig,
        out: "queue.Queue[BusItem]",
        stop_evt: threading.Event,
    ) -> None:
        super().__init__(name="bus-listener", daemon=True)
        self.config = config
        self.out = out
        self.stop_evt = stop_evt
        self.ready = threading.Event()
        self.boot_error: Optional[BaseException] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None

    def _client(self) -> aiomqtt.Client:
        host, port, tls = broker_address(self.config.url)
        return aiomqtt.Client(
            host,
            port,
            identifier=self.config.client_id or None,
            username=self.config.username or None,
            password=self.config.password or None,
            tls_context=ssl.create_default_context() if tls else None,
        )

    def run(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        try:
            self._task = loop.create_task(self._consume())
            loop.run_until_complete(self._task)
        except asyncio.CancelledError:
            log.debug("bus listener cancelled")
        except Exception as e:
            log.exception("bus listener crashed")
            if not self.ready.is_set():
                self.boot_error = e
        finally:
            self.ready.set()
            loop.close()

    def stop(self) -> None:
        self.stop_evt.set()
        loop, task = self._loop, self._task
        if loop is not None and task is not None and not loop.is_closed():
            loop.call_soon_threadsafe(task.cancel)

    async def _consume(self) -> None:
        delay = 1.0
        while not self.stop_evt.is_set():
            try:
                async with self._client() as client:
                    await client.subscribe(self.config.topic, qos=0)
                    log.info("subscribed to %s at %s", self.config.topic, self.config.url)
                    self.ready.set()
                    delay = 1.0
                    async for message in client.messages:
                        await self._enqueue(message.topic.value, payload_bytes(message.payload))
                        if self.stop_evt.is_set():
                            return
            except aiomqtt.MqttError as e:
                if not self.ready.is_set():
                    log.error("cannot connect to MQTT broker %s: %s", self.config.url, e)
                    self.boot_error = e
                    return
                log.warning("mqtt connection lost: %s; reconnecting in %.0fs", e, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.config.reconnect_max_s)

    async def _enqueue(self, topic: str, payload: bytes) -> None:
        log.debug("received topic=%s payload=%r", topic, payload)
        warned = False
        while not self.stop_evt.is_set():
            try:
                self.out.put_nowait((topic, payload))
                return
            except queue.Full:
                if not warned:
                    log.warning("message queue full; holding topic=%s", topic)
                    warned = True
                await asyncio.sleep(0.1)


class MessageProcessor(threading.Thread):
    """The single consumer of bus messages."""

    def __init__(
        self,
        engine: CorrelationEngine,
        inbox: "queue.Queue[BusItem]",
        stop_evt: threading.Event,
        poll_s: float = 0.5,
    ) -> None:
        super().__init__(name="message-processor", daemon=True)
        self.engine = engine
        self.inbox = inbox
        self.stop_evt = stop_evt
        self.poll_s = poll_s

    def run(self) -> None:
        while not self.stop_evt.is_set():
            try:
                topic, payload = self.inbox.get(timeout=self.poll_s)
            except queue.Empty:
                continue
            self.process(topic, payload)
        left = self.inbox.qsize()
        if left:
            log.warning("message processor stopped with %d queued messages unprocessed", left)
        else:
            log.debug("message processor stopped")

    def process(self, topic: str, payload: bytes) -> Optional[Outcome]:
        """Handle one message; nothing raised here stops the loop."""
        try:
            outcome = self.engine.handle(topic, payload)
            log.debug("topic=%s -> %s", topic, outcome.action.value)
            return outcome
        except Exception:
            log.exception("unexpected error handling topic=%s payload=%r", topic, payload)
            return None
        finally:
            self.inbox.task_done()
