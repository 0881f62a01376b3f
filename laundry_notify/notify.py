"""
Laundry-notify push layer: ntfy HTTP publishing.

Dev mode: logs instead of sending when no ntfy server is configured.
"""

from __future__ import annotations

import base64
import http.client
import logging
import ssl
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.error import HTTPError, URLError

from laundry_notify.errors import TransportError, ValidationError

log = logging.getLogger(__name__)

DEFAULT_SERVER = "https://ntfy.sh"


@dataclass(frozen=True)
class NtfyConfig:
    """ntfy configuration. Set server=None for dev mode (log-only)."""
    server: Optional[str]
    base_topic: str
    user: Optional[str] = None
    password: Optional[str] = None
    priority: Optional[int] = None  # 1..5, server default when unset
    timeout: int = 10


class NtfyNotifier:
    """Publishes to <server>/<base_topic>-<topic> using stdlib urllib."""

    def __init__(self, config: NtfyConfig) -> None:
        if not config.base_topic:
            raise ValidationError("ntfy base topic required")
        self.config = config

    def full_topic(self, topic: str) -> str:
        return f"{self.config.base_topic}-{topic}"

    def topic_url(self, topic: str) -> str:
        server = (self.config.server or DEFAULT_SERVER).rstrip("/")
        return f"{server}/{urllib.parse.quote(self.full_topic(topic), safe='')}"

    def _headers(self, title: str) -> Dict[str, str]:
        headers = {"Title": title, "Content-Type": "text/plain; charset=utf-8"}
        if self.config.priority:
            headers["Priority"] = str(self.config.priority)
        if self.config.user and self.config.password:
            raw = f"{self.config.user}:{self.config.password}".encode("utf-8")
            headers["Authorization"] = "Basic " + base64.b64encode(raw).decode("ascii")
        return headers

    def notify(self, topic: str, title: str, body: str) -> None:
        """Publish one message. Raises TransportError if it was not accepted."""
        if not self.config.server:
            log.info("[dev] ntfy topic=%s title=%r body=%r", self.full_topic(topic), title, body)
            return

        url = self.topic_url(topic)
        req = urllib.request.Request(
            url,
            data=body.encode("utf-8"),
            headers=self._headers(title),
            method="POST",
        )
        try:
            ctx = ssl.create_default_context()
            with urllib.request.urlopen(req, timeout=self.config.timeout, context=ctx) as resp:
                status = resp.status
        except HTTPError as e:
            raise TransportError(f"ntfy returned HTTP {e.code} for {url}") from e
        except (URLError, OSError) as e:
            raise TransportError(f"cannot reach ntfy at {url}: {e}") from e
        except (ValueError, http.client.HTTPException) as e:
            # bad header or URL text, protocol errors
            raise TransportError(f"cannot publish to {url}: {e!r}") from e
        if not 200 <= status < 300:
            raise TransportError(f"ntfy returned HTTP {status} for {url}")
        log.debug("published to %s", url)


class RecordingTransport:
    """In-memory transport for scenarios and tests; can fail chosen topics."""

    def __init__(self, fail_topics: Tuple[str, ...] = ()) -> None:
        self.sent: List[Tuple[str, str, str]] = []
        self.fail_topics = set(fail_topics)

    def notify(self, topic: str, title: str, body: str) -> None:
        if topic in self.fail_topics:
            raise TransportError(f"refused topic {topic}")
        self.sent.append((topic, title, body))
