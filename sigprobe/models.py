"""
Run configuration and per-attempt state for the reachability probe.
"""

import ipaddress
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

DEFAULT_PORT = 8000
DEFAULT_PERIOD_SEC = 1
MIN_PERIOD_MS = 100
DEFAULT_CONNECT_TIMEOUT_MS = 8000  # TCP only
DEFAULT_READ_TIMEOUT_MS = 1500

BACKOFF_STEP_MS = 500
BACKOFF_CAP_MS = 5000


class Transport(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class Direction(str, Enum):
    """UDP traffic direction, fixed for the whole run."""

    CLIENT_TO_SERVER = "cts"
    SERVER_TO_CLIENT = "stc"
    BOTH = "both"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Direction":
        # Unknown values fall back to BOTH
        try:
            return cls((value or "both").lower())
        except ValueError:
            return cls.BOTH

    @property
    def sends(self) -> bool:
        return self in (Direction.CLIENT_TO_SERVER, Direction.BOTH)

    @property
    def receives(self) -> bool:
        return self in (Direction.SERVER_TO_CLIENT, Direction.BOTH)


def clamp_period_ms(period_ms: int) -> int:
    return max(MIN_PERIOD_MS, int(period_ms))


def validate_host(host: Optional[str]) -> str:
    """Accept an IP address or a plain hostname; raise ValueError otherwise."""
    host = (host or "").strip()
    if not host:
        raise ValueError("Host is required")
    try:
        ipaddress.ip_address(host)
    except ValueError:
        if len(host) > 253:
            raise ValueError("Invalid hostname length")
        if not all(c.isalnum() or c in ".-" for c in host):
            raise ValueError("Host must be a valid IP address or hostname")
    return host


def validate_port(port: int) -> int:
    if not (1 <= int(port) <= 65535):
        raise ValueError("Port must be between 1 and 65535")
    return int(port)


@dataclass(frozen=True)
class RunConfig:
    """
    Parameters for one probe run. Supplied once at start, never mutated.
    """

    host: str
    port: int = DEFAULT_PORT
    transport: Transport = Transport.TCP
    period_ms: int = DEFAULT_PERIOD_SEC * 1000
    reset_every_sec: int = 0
    reset_downtime_sec: int = 0
    direction: Direction = Direction.BOTH
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS

    def __post_init__(self):
        # Floor applies no matter how the config was built
        object.__setattr__(self, "period_ms", clamp_period_ms(self.period_ms))
        if self.reset_every_sec < 0 or self.reset_downtime_sec < 0:
            raise ValueError("Reset period and downtime must be >= 0")

    @classmethod
    def from_request(
        cls,
        host: Optional[str],
        port: int = DEFAULT_PORT,
        transport: str = "tcp",
        direction: Optional[str] = "both",
        period_sec: int = DEFAULT_PERIOD_SEC,
        reset_every_sec: int = 0,
        reset_downtime_sec: int = 0,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
    ) -> "RunConfig":
        """Build a config from the external start parameters (seconds-based)."""
        try:
            mode = Transport((transport or "tcp").lower())
        except ValueError:
            raise ValueError(f"Unknown transport: {transport}")

        return cls(
            host=validate_host(host),
            port=validate_port(port),
            transport=mode,
            period_ms=clamp_period_ms(int(period_sec) * 1000),
            reset_every_sec=int(reset_every_sec),
            reset_downtime_sec=int(reset_downtime_sec),
            direction=Direction.parse(direction),
            connect_timeout_ms=connect_timeout_ms,
            read_timeout_ms=read_timeout_ms,
        )

    @property
    def period(self) -> float:
        return self.period_ms / 1000.0

    @property
    def connect_timeout(self) -> float:
        return self.connect_timeout_ms / 1000.0

    @property
    def read_timeout(self) -> float:
        return self.read_timeout_ms / 1000.0

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def describe(self) -> str:
        """Start summary shown to the caller."""
        text = (
            f"Starting {self.transport.value} • {self.endpoint} • every {self.period_ms}ms • "
            f"reset={self.reset_every_sec}s/↓{self.reset_downtime_sec}s"
        )
        if self.transport == Transport.UDP:
            text += f" • dir={self.direction.value}"
        return text


@dataclass
class ConnectionAttempt:
    """State for a single socket lifetime."""

    sequence: int = 1
    started_at: float = field(default_factory=time.monotonic)
    did_timed_reset: bool = False

    def next_sequence(self) -> int:
        seq = self.sequence
        self.sequence += 1
        return seq

    def age(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.started_at


@dataclass
class BackoffState:
    attempt_count: int = 0

    def delay_ms(self) -> int:
        return min(self.attempt_count * BACKOFF_STEP_MS, BACKOFF_CAP_MS)

    def record_failure(self) -> float:
        """Count a failed attempt and return the delay (seconds) before retrying."""
        self.attempt_count += 1
        return self.delay_ms() / 1000.0

    def reset(self):
        self.attempt_count = 0


@dataclass
class InboundMessage:
    text: str
    structured: bool = False
    hello: Optional[str] = None
    payload: Optional[dict] = None
    parse_error: Optional[str] = None
