"""
Shared pieces of the TCP and UDP probe loops.

Holds the wire payloads, inbound reply classification and the reconnect
policy (timed-reset downtime vs. exponential backoff) that both transports
follow. The transport specifics live in tcp_client.py and udp_client.py.
"""

import asyncio
import json
import logging
import time
from typing import Callable, Optional

from sigprobe.event_log import log_probe_event
from sigprobe.models import BackoffState, ConnectionAttempt, InboundMessage, RunConfig

logger = logging.getLogger(__name__)

CLIENT_TAG = "from-client"
PRIME_PAYLOAD = f"PRIME {CLIENT_TAG}"
RECV_BUFFER_SIZE = 4096


def heartbeat_payload(seq: int) -> str:
    return f"HELLO seq={seq} {CLIENT_TAG}"


def heartbeat_line(seq: int) -> bytes:
    """TCP heartbeat, one CRLF-terminated ASCII line."""
    return (heartbeat_payload(seq) + "\r\n").encode("ascii")


def classify_inbound(data) -> InboundMessage:
    """Classify a received line or datagram.

    Text wrapped in braces is parsed as JSON and, when it is an object,
    exposes the optional ``hello`` string field. Anything else is opaque
    text. Parse failures are reported on the message, never raised.
    """
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("utf-8", errors="replace")
    text = data.strip()

    if not (text.startswith("{") and text.endswith("}")):
        return InboundMessage(text=text)

    try:
        obj = json.loads(text)
    except (ValueError, RecursionError) as e:
        # RecursionError: nesting deeper than the decoder can follow
        return InboundMessage(text=text, parse_error=str(e) or type(e).__name__)

    if not isinstance(obj, dict):
        return InboundMessage(text=text, parse_error="not a JSON object")

    hello = obj.get("hello")
    return InboundMessage(
        text=text,
        structured=True,
        hello=hello if isinstance(hello, str) else None,
        payload=obj,
    )


class EndOfStream(ConnectionError):
    """Peer closed the stream."""


StatusCallback = Callable[[str], None]


class ProbeClient:
    """
    Base reconnect loop shared by the TCP and UDP clients.

    Subclasses implement ``_run_attempt``: it returns normally only after a
    timed reset and raises on any transport failure. ``sleep`` and ``clock``
    are injectable so tests can observe delays without waiting for them.
    """

    transport_name = "probe"

    def __init__(
        self,
        config: RunConfig,
        on_status: Optional[StatusCallback] = None,
        sleep=None,
        clock=None,
    ):
        self.config = config
        self.backoff = BackoffState()
        self.attempts_started = 0
        self._on_status = on_status
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._log_tag = self.transport_name.upper()

    async def run(self):
        """Loop forever across reconnects; only cancellation ends it."""
        logger.info(f"{self._log_tag} probe loop started for {self.config.endpoint}")
        try:
            while True:
                attempt = ConnectionAttempt(started_at=self._clock())
                self.attempts_started += 1
                try:
                    await self._run_attempt(attempt)
                except Exception as e:
                    await self._after_failure(e)
                    continue
                await self._after_clean_exit(attempt)
        finally:
            logger.info(f"{self._log_tag} probe loop exited for {self.config.endpoint}")

    async def _run_attempt(self, attempt: ConnectionAttempt):
        raise NotImplementedError

    async def _after_clean_exit(self, attempt: ConnectionAttempt):
        # A timed reset is not a failure
        self.backoff.reset()
        if not attempt.did_timed_reset:
            return

        downtime = self.config.reset_downtime_sec
        if downtime > 0:
            self._emit_status(f"Timed reset • down for {downtime}s")
            self._event("INFO", "RESET", f"Timed reset after {self.config.reset_every_sec}s; downtime {downtime}s")
            await self._sleep(downtime)
        else:
            self._event("INFO", "RESET", f"Timed reset after {self.config.reset_every_sec}s; reconnecting now")

    async def _after_failure(self, exc: Exception):
        delay = self.backoff.record_failure()
        delay_ms = int(delay * 1000)
        message = str(exc) or exc.__class__.__name__
        logger.error(
            f"{self._log_tag} error: {message} (attempt {self.backoff.attempt_count}). "
            f"Reconnecting in {delay_ms}ms"
        )
        self._event("WARNING", "BACKOFF", f"{message} (attempt {self.backoff.attempt_count}); retry in {delay_ms}ms")
        self._emit_status(f"{self._log_tag} error: {message} • retry in {delay_ms}ms")
        await self._sleep(delay)

    def _log_inbound(self, msg: InboundMessage, source: str = ""):
        origin = f" from {source}" if source else ""
        if msg.parse_error is not None:
            logger.warning(f"{self._log_tag} RX (not valid JSON?){origin}: {msg.text}")
            self._event("WARNING", "RX", f"not valid JSON: {msg.text}")
        elif msg.structured and msg.hello is not None:
            logger.info(f"{self._log_tag} RX JSON{origin}: hello={msg.hello}")
            self._event("INFO", "RX", f"hello={msg.hello}")
        elif msg.structured:
            logger.info(f"{self._log_tag} RX JSON{origin}: {msg.payload}")
            self._event("INFO", "RX", json.dumps(msg.payload))
        else:
            logger.debug(f"{self._log_tag} RX{origin}: {msg.text}")
            self._event("DEBUG", "RX", msg.text)

    def _emit_status(self, text: str):
        if self._on_status is None:
            return
        try:
            self._on_status(text)
        except Exception as e:
            logger.warning(f"Status callback failed: {e}")

    def _event(self, level: str, category: str, message: str):
        log_probe_event(self.transport_name, level, category, message)
