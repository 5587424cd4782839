"""
TCP probe loop.

One stream connection per attempt. A writer sends a heartbeat line every
period while a reader consumes newline-delimited replies; an optional
deadline task ends the session for a timed reset.
"""

import asyncio
import contextlib
import logging
import socket

from sigprobe.models import ConnectionAttempt
from sigprobe.services import EndOfStream, ProbeClient, classify_inbound, heartbeat_line

logger = logging.getLogger(__name__)


class TcpTestClient(ProbeClient):
    transport_name = "tcp"

    def __init__(self, config, on_status=None, sleep=None, clock=None, open_connection=None):
        super().__init__(config, on_status=on_status, sleep=sleep, clock=clock)
        self._open_connection = open_connection or asyncio.open_connection

    async def _connect(self):
        """Open the stream, bounded by the connect timeout."""
        endpoint = self.config.endpoint
        try:
            reader, writer = await asyncio.wait_for(
                self._open_connection(self.config.host, self.config.port),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Connection timeout to {endpoint}")
            raise ConnectionError(f"Connect timeout to {endpoint}")
        except Exception as e:
            logger.error(f"Connection failed to {endpoint}: {e}")
            raise ConnectionError(f"Failed to connect to {endpoint}: {e}")

        sock = writer.get_extra_info("socket")
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

        return reader, writer

    async def _run_attempt(self, attempt: ConnectionAttempt):
        reader, writer = await self._connect()
        logger.info(f"Connected to {self.config.endpoint}")
        self._event("INFO", "CONNECT", f"Connected to {self.config.endpoint}")
        self._emit_status(f"Connected tcp • {self.config.endpoint}")

        try:
            await self._run_session(reader, writer, attempt)
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def _run_session(self, reader, writer, attempt: ConnectionAttempt):
        """Run writer, reader and reset deadline until the first one finishes.

        Every sibling is cancelled and joined before this returns, whether the
        session ended by timed reset, transport error or outside cancellation.
        """
        tasks = {
            asyncio.create_task(self._write_heartbeats(writer, attempt), name="tcp-writer"),
            asyncio.create_task(self._read_replies(reader), name="tcp-reader"),
        }
        deadline = None
        if self.config.reset_every_sec > 0:
            deadline = asyncio.create_task(self._reset_deadline(attempt), name="tcp-reset")
            tasks.add(deadline)

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if deadline is not None and deadline in done and attempt.did_timed_reset:
            return

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        raise ConnectionError("TCP session ended unexpectedly")

    async def _write_heartbeats(self, writer, attempt: ConnectionAttempt):
        while True:
            seq = attempt.next_sequence()
            line = heartbeat_line(seq)
            writer.write(line)
            await writer.drain()
            text = line.decode("ascii").strip()
            logger.info(f"TCP TX: {text}")
            self._event("INFO", "TX", text)
            await self._sleep(self.config.period)

    async def _read_replies(self, reader):
        while True:
            try:
                line = await asyncio.wait_for(reader.readline(), timeout=self.config.read_timeout)
            except asyncio.TimeoutError:
                # no data this cycle; keep looping
                continue

            if not line:
                raise EndOfStream("server closed")
            self._log_inbound(classify_inbound(line))

    async def _reset_deadline(self, attempt: ConnectionAttempt):
        await self._sleep(self.config.reset_every_sec)
        attempt.did_timed_reset = True
        logger.info(f"Timed reset of {self.config.endpoint} after {self.config.reset_every_sec}s")
