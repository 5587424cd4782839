"""
UDP probe loop with three directions:
 - CLIENT_TO_SERVER: send periodic heartbeats only
 - SERVER_TO_CLIENT: send a ONE-TIME "prime" datagram, then receive-only
 - BOTH: send heartbeats and also receive
"""

import asyncio
import logging
import socket
from typing import Optional

from sigprobe.models import ConnectionAttempt, Direction
from sigprobe.services import PRIME_PAYLOAD, RECV_BUFFER_SIZE, ProbeClient, classify_inbound, heartbeat_payload

logger = logging.getLogger(__name__)


class DatagramChannel:
    """Connected, non-blocking datagram socket driven by the event loop.

    ``connect()`` sets the default destination and makes the kernel drop
    datagrams from any other peer.
    """

    def __init__(self, sock: socket.socket, peer):
        self.sock = sock
        self.peer = peer
        self._loop = asyncio.get_running_loop()

    @classmethod
    async def open(cls, host: str, port: int) -> "DatagramChannel":
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_DGRAM, proto=socket.IPPROTO_UDP)
        if not infos:
            raise ConnectionError(f"DNS resolution failed for {host}")
        family, _, _, _, addr = infos[0]

        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            sock.connect(addr)
        except OSError:
            sock.close()
            raise
        return cls(sock, addr)

    @property
    def local_address(self) -> str:
        host, port = self.sock.getsockname()[:2]
        return f"{host}:{port}"

    @property
    def peer_address(self) -> str:
        return f"{self.peer[0]}:{self.peer[1]}"

    async def send(self, data: bytes):
        await self._loop.sock_sendall(self.sock, data)

    async def recv(self, timeout: float) -> Optional[bytes]:
        """One bounded receive; None when nothing arrived in time."""
        try:
            return await asyncio.wait_for(self._loop.sock_recv(self.sock, RECV_BUFFER_SIZE), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self):
        self.sock.close()


class UdpTestClient(ProbeClient):
    transport_name = "udp"

    def __init__(self, config, on_status=None, sleep=None, clock=None, open_channel=None):
        super().__init__(config, on_status=on_status, sleep=sleep, clock=clock)
        self._open_channel = open_channel or DatagramChannel.open

    async def _run_attempt(self, attempt: ConnectionAttempt):
        # Resolution happens here so a DNS failure takes the backoff path
        channel = await self._open_channel(self.config.host, self.config.port)
        direction = self.config.direction
        logger.info(
            f"UDP connected (pseudo) to {self.config.endpoint} from {channel.local_address} dir={direction.value}"
        )
        self._event("INFO", "CONNECT", f"Socket bound {channel.local_address} -> {channel.peer_address} dir={direction.value}")
        self._emit_status(f"Connected udp • {self.config.endpoint} • dir={direction.value}")

        try:
            await self._exchange(channel, attempt)
        finally:
            channel.close()

    async def _exchange(self, channel: DatagramChannel, attempt: ConnectionAttempt):
        direction = self.config.direction
        reset_every = self.config.reset_every_sec

        if direction == Direction.SERVER_TO_CLIENT:
            prime = PRIME_PAYLOAD.encode("ascii")
            await channel.send(prime)
            logger.info(f"UDP TX PRIME ({len(prime)}B): {PRIME_PAYLOAD}")
            self._event("INFO", "TX", PRIME_PAYLOAD)

        while True:
            if reset_every > 0 and attempt.age(self._clock()) >= reset_every:
                attempt.did_timed_reset = True
                logger.info(f"Timed reset of {self.config.endpoint} after {reset_every}s")
                return

            if direction.sends:
                payload = heartbeat_payload(attempt.next_sequence())
                out = payload.encode("ascii")
                await channel.send(out)
                logger.info(f"UDP TX ({len(out)}B): {payload}")
                self._event("INFO", "TX", payload)

            if direction.receives:
                data = await channel.recv(self.config.read_timeout)
                if data is not None:
                    self._log_inbound(classify_inbound(data), channel.peer_address)

            await self._sleep(self.config.period)
