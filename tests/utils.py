import asyncio

import pytest

from sigprobe.services import ProbeClient


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


class FakeSleep:
    """
    Stand-in for asyncio.sleep that records every requested delay.

    - advances ``clock`` (if given) by the delay instead of waiting
    - raises CancelledError when ``cancel_when(calls)`` is true, which ends
      a probe loop the same way an outside cancel would
    - delays listed in ``block_on`` really wait (cancellable) for an hour
    """

    def __init__(self, clock=None, cancel_when=None, block_on=()):
        self.calls = []
        self.clock = clock
        self.cancel_when = cancel_when
        self.block_on = set(block_on)

    async def __call__(self, delay):
        self.calls.append(delay)
        if self.cancel_when is not None and self.cancel_when(self.calls):
            raise asyncio.CancelledError()
        if self.clock is not None:
            self.clock.now += delay
        if delay in self.block_on:
            await asyncio.sleep(3600)
        else:
            await asyncio.sleep(0)


class FakeWriter:
    def __init__(self):
        self.written = []
        self.closed = False

    def write(self, data: bytes):
        self.written.append(data)

    async def drain(self):
        pass

    def get_extra_info(self, name, default=None):
        return default

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class FakeChannel:
    local_address = "127.0.0.1:40000"
    peer_address = "127.0.0.1:8000"

    def __init__(self, inbound=()):
        self.sent = []
        self.inbound = list(inbound)
        self.recv_calls = 0
        self.closed = False

    async def send(self, data: bytes):
        self.sent.append(data)

    async def recv(self, timeout):
        self.recv_calls += 1
        if self.inbound:
            return self.inbound.pop(0)
        return None

    def close(self):
        self.closed = True


class ChannelFactory:
    """open_channel replacement. ``failures`` maps call number (1-based) to an exception."""

    def __init__(self, inbound=(), failures=None, fail_after=None):
        self.inbound = list(inbound)
        self.failures = failures or {}
        self.fail_after = fail_after
        self.calls = 0
        self.channels = []

    async def __call__(self, host, port):
        self.calls += 1
        if self.calls in self.failures:
            raise self.failures[self.calls]
        if self.fail_after is not None and self.calls > self.fail_after:
            raise OSError("Name or service not known")
        channel = FakeChannel(self.inbound)
        self.channels.append(channel)
        return channel


class IdleClient(ProbeClient):
    """Probe client whose attempts never end; used to exercise the runner."""

    transport_name = "tcp"

    async def _run_attempt(self, attempt):
        await asyncio.Event().wait()


def run_until_cancelled(client, timeout=5.0):
    """Drive ``client.run()`` until it ends by cancellation."""
    async def scenario():
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(client.run(), timeout=timeout)

    asyncio.run(scenario())
