"""
Tests for the TCP probe loop.

Tests cover:
- Heartbeat lines and reply classification against a live local server
- Linear backoff with cap on consecutive connect failures
- Timed reset does not count as a failure
- Reset downtime and sequence restart on reconnect
- End-of-stream and connect timeout take the backoff path
- Cancellation during the reset downtime
"""
import asyncio

import pytest

from sigprobe.event_log import get_probe_events
from sigprobe.models import RunConfig
from sigprobe.tcp_client import TcpTestClient
from tests.utils import FakeSleep, FakeWriter, run_until_cancelled


def _config(**overrides):
    params = dict(host="127.0.0.1", port=8000)
    params.update(overrides)
    return RunConfig(**params)


def test_heartbeats_and_replies_against_live_server(tcp_reply_server):
    config = _config(port=tcp_reply_server.actual_port, period_ms=100, read_timeout_ms=200)
    statuses = []
    client = TcpTestClient(config, on_status=statuses.append)

    async def scenario():
        task = asyncio.create_task(client.run())
        await asyncio.sleep(0.7)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    received = tcp_reply_server.snapshot()
    assert received[:3] == [
        b"HELLO seq=1 from-client\r\n",
        b"HELLO seq=2 from-client\r\n",
        b"HELLO seq=3 from-client\r\n",
    ]

    rx = [e["message"] for e in get_probe_events(category="RX", limit=1000)]
    assert "hello=HELLO seq=1 from-client" in rx
    assert "welcome" in rx
    assert statuses[0] == f"Connected tcp • 127.0.0.1:{tcp_reply_server.actual_port}"
    assert client.backoff.attempt_count == 0
    assert client.attempts_started == 1


def test_consecutive_connect_failures_back_off_linearly_up_to_cap():
    async def refuse(host, port):
        raise ConnectionRefusedError("Connection refused")

    sleep = FakeSleep(cancel_when=lambda calls: len(calls) >= 12)
    client = TcpTestClient(_config(), sleep=sleep, open_connection=refuse)

    run_until_cancelled(client)

    assert sleep.calls == [min(0.5 * k, 5.0) for k in range(1, 13)]
    assert client.backoff.attempt_count == 12


def test_timed_reset_does_not_count_as_failure():
    writers = []

    async def open_connection(host, port):
        if writers:
            raise ConnectionRefusedError("Connection refused")
        writers.append(FakeWriter())
        return asyncio.StreamReader(), writers[0]

    sleep = FakeSleep(cancel_when=lambda calls: client.attempts_started >= 2)
    client = TcpTestClient(_config(reset_every_sec=30), sleep=sleep, open_connection=open_connection)

    run_until_cancelled(client)

    assert 30 in sleep.calls
    # First real failure after the reset waits as if it were the first one
    assert sleep.calls[-1] == 0.5
    assert client.backoff.attempt_count == 1
    assert writers[0].written[0] == b"HELLO seq=1 from-client\r\n"
    assert writers[0].closed
    assert get_probe_events(category="RESET")


def test_reset_downtime_then_reconnect_restarts_sequence():
    writers = []

    async def open_connection(host, port):
        writers.append(FakeWriter())
        return asyncio.StreamReader(), writers[-1]

    sleep = FakeSleep()
    statuses = []
    client = TcpTestClient(
        _config(reset_every_sec=30, reset_downtime_sec=5),
        on_status=statuses.append,
        sleep=sleep,
        open_connection=open_connection,
    )

    async def scenario():
        task = asyncio.create_task(client.run())
        while len(writers) < 2 or not writers[1].written:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert 5 in sleep.calls
    assert 0.5 not in sleep.calls
    assert writers[0].closed
    assert writers[1].written[0] == b"HELLO seq=1 from-client\r\n"
    assert "Timed reset • down for 5s" in statuses
    assert client.backoff.attempt_count == 0


def test_end_of_stream_triggers_backoff():
    async def open_connection(host, port):
        reader = asyncio.StreamReader()
        reader.feed_eof()
        return reader, FakeWriter()

    statuses = []
    sleep = FakeSleep(cancel_when=lambda calls: calls[-1] == 0.5)
    client = TcpTestClient(_config(), on_status=statuses.append, sleep=sleep, open_connection=open_connection)

    run_until_cancelled(client)

    assert statuses[-1] == "TCP error: server closed • retry in 500ms"
    assert client.backoff.attempt_count == 1


def test_connect_timeout_is_retryable():
    async def never_connects(host, port):
        await asyncio.sleep(3600)

    statuses = []
    sleep = FakeSleep(cancel_when=lambda calls: True)
    client = TcpTestClient(
        _config(connect_timeout_ms=50),
        on_status=statuses.append,
        sleep=sleep,
        open_connection=never_connects,
    )

    run_until_cancelled(client)

    assert sleep.calls == [0.5]
    assert "Connect timeout to 127.0.0.1:8000" in statuses[-1]


def test_malformed_reply_is_logged_not_fatal():
    async def open_connection(host, port):
        reader = asyncio.StreamReader()
        reader.feed_data(b"{broken}\n")
        reader.feed_data(b'{"hello":"world"}\n')
        return reader, FakeWriter()

    async def scenario():
        client = TcpTestClient(_config(), open_connection=open_connection)
        task = asyncio.create_task(client.run())
        while len(get_probe_events(category="RX")) < 2:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return client

    client = asyncio.run(scenario())

    rx = get_probe_events(category="RX")
    assert rx[0]["message"] == "hello=world"
    assert rx[1]["level"] == "WARNING"
    assert client.backoff.attempt_count == 0


def test_cancel_during_reset_downtime_stops_without_reconnecting():
    connects = []

    async def open_connection(host, port):
        connects.append((host, port))
        return asyncio.StreamReader(), FakeWriter()

    sleep = FakeSleep(block_on={30})
    client = TcpTestClient(
        _config(reset_every_sec=10, reset_downtime_sec=30),
        sleep=sleep,
        open_connection=open_connection,
    )

    async def scenario():
        task = asyncio.create_task(client.run())
        while 30 not in sleep.calls:
            await asyncio.sleep(0.01)
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=1.0)
        assert task in done
        assert task.cancelled()

    asyncio.run(scenario())

    assert connects == [("127.0.0.1", 8000)]


def test_deeply_nested_reply_does_not_end_the_attempt():
    async def open_connection(host, port):
        reader = asyncio.StreamReader()
        reader.feed_data(('{"a":' * 5000 + "1" + "}" * 5000 + "\n").encode())
        reader.feed_data(b'{"hello":"after"}\n')
        return reader, FakeWriter()

    async def scenario():
        client = TcpTestClient(_config(), open_connection=open_connection)
        task = asyncio.create_task(client.run())
        while len(get_probe_events(category="RX")) < 2:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return client

    client = asyncio.run(scenario())

    rx = get_probe_events(category="RX")
    assert rx[0]["message"] == "hello=after"
    assert rx[1]["level"] == "WARNING"
    assert client.backoff.attempt_count == 0
    assert client.attempts_started == 1
