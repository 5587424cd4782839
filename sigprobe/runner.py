"""
Run-state supervisor for the probe loops.

Exactly one probe (TCP or UDP) runs per process. A start request while a
probe is active is ignored; stop cancels the loop task and waits for it to
unwind its socket.
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from sigprobe.event_log import clear_probe_events, get_event_stats, log_probe_event
from sigprobe.models import RunConfig, Transport
from sigprobe.services import ProbeClient, StatusCallback
from sigprobe.tcp_client import TcpTestClient
from sigprobe.udp_client import UdpTestClient

logger = logging.getLogger(__name__)

CLIENTS = {
    Transport.TCP: TcpTestClient,
    Transport.UDP: UdpTestClient,
}


def build_client(config: RunConfig, on_status: StatusCallback) -> ProbeClient:
    return CLIENTS[config.transport](config, on_status=on_status)


class ProbeRunner:
    """
    Owns the single active probe task.

    Features:
    - Atomic compare-and-set on the running flag (duplicate starts are no-ops)
    - Rolling status string for the API / CLI
    - Graceful stop via task cancellation
    """

    def __init__(self, client_factory: Optional[Callable[[RunConfig, StatusCallback], ProbeClient]] = None):
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._lock = threading.Lock()
        self._logger = logger
        self._client_factory = client_factory or build_client
        self._on_status: Optional[StatusCallback] = None
        self.config: Optional[RunConfig] = None
        self.client: Optional[ProbeClient] = None
        self.started_at: Optional[datetime] = None
        self.last_status = "Idle"
        self.status_version = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, config: RunConfig, on_status: Optional[StatusCallback] = None) -> bool:
        """Start a probe for ``config``. Returns False if one is already active."""
        with self._lock:
            if self._running:
                self._logger.info("Probe already running; ignoring duplicate start")
                return False
            self._running = True

        try:
            self._on_status = on_status
            self.config = config
            self.started_at = datetime.utcnow()
            clear_probe_events()

            self.client = self._client_factory(config, self._publish)
            self._publish(config.describe())
            log_probe_event(config.transport.value, "INFO", "STATE", config.describe())
            self._logger.info(
                f"Mode={config.transport.value.upper()}; host={config.host} port={config.port}"
                + (f" dir={config.direction.value}" if config.transport == Transport.UDP else "")
            )

            self._task = asyncio.create_task(self._run_loop(), name=f"probe-{config.transport.value}")
        except Exception:
            # No task was created, so the done-callback will never clear the flag
            self._clear_running(None)
            raise
        # Also covers a task cancelled before its first step
        self._task.add_done_callback(self._clear_running)
        return True

    async def stop(self, timeout: float = 5.0) -> bool:
        """Cancel the active probe and wait for it to exit. Returns False if idle."""
        task = self._task
        if task is None or task.done():
            return False

        self._logger.info("Stopping probe...")
        task.cancel()
        _, pending = await asyncio.wait({task}, timeout=timeout)
        if pending:
            self._logger.warning(f"Probe task did not stop within {timeout}s")

        self._publish("Stopped")
        if self.config is not None:
            log_probe_event(self.config.transport.value, "INFO", "STATE", "Stopped")
        self._logger.info("Probe stopped")
        return True

    async def wait(self):
        """Block until the active probe task finishes."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _run_loop(self):
        try:
            await self.client.run()
        except asyncio.CancelledError:
            # normal on stop
            self._logger.debug("Probe task cancelled")
            raise
        except Exception as e:
            self._logger.error(f"Client loop error: {e}", exc_info=True)
            self._publish(f"Error: {e or 'network'}")

    def _clear_running(self, _task: asyncio.Task):
        with self._lock:
            self._running = False

    def _publish(self, text: str):
        self.last_status = text
        self.status_version += 1
        if self._on_status is None:
            return
        try:
            self._on_status(text)
        except Exception as e:
            self._logger.warning(f"Status callback failed: {e}")

    def status(self) -> dict:
        cfg = self.config
        data = {
            "running": self._running,
            "status": self.last_status,
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
            "attempts": self.client.attempts_started if self.client else 0,
            "consecutive_failures": self.client.backoff.attempt_count if self.client else 0,
            "events": get_event_stats()["total"],
        }
        if cfg is not None:
            data.update({
                "transport": cfg.transport.value,
                "host": cfg.host,
                "port": cfg.port,
                "direction": cfg.direction.value if cfg.transport == Transport.UDP else None,
                "period_ms": cfg.period_ms,
                "reset_every_sec": cfg.reset_every_sec,
                "reset_downtime_sec": cfg.reset_downtime_sec,
            })
        return data


# Global singleton instance
runner = ProbeRunner()
