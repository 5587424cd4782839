#!/usr/bin/env python3
"""
Foreground signaling-path probe.

Runs one TCP or UDP probe loop against a single endpoint until Ctrl+C.

Usage:
    python -m sigprobe.cli --host probe.example.net --port 8000
    python -m sigprobe.cli --host 10.0.0.5 --transport udp --direction stc --reset-every 60 --reset-downtime 5
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime

from sigprobe.models import DEFAULT_CONNECT_TIMEOUT_MS, DEFAULT_PORT, DEFAULT_READ_TIMEOUT_MS, RunConfig
from sigprobe.runner import ProbeRunner

# Environment overrides for the socket timeouts (milliseconds)
CONNECT_TIMEOUT_MS = int(os.getenv("CONNECT_TIMEOUT_MS", str(DEFAULT_CONNECT_TIMEOUT_MS)))
READ_TIMEOUT_MS = int(os.getenv("READ_TIMEOUT_MS", str(DEFAULT_READ_TIMEOUT_MS)))


def _print_status(text: str):
    stamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{stamp}] {text}", flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Signaling path TCP/UDP reachability probe",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
UDP directions:
  cts   client -> server heartbeats only
  stc   one PRIME datagram, then receive only
  both  heartbeats and receive (default)

Examples:
  %(prog)s --host 192.168.1.100
  %(prog)s --host 192.168.1.100 --transport udp --direction stc
  %(prog)s --host probe.example.net --reset-every 300 --reset-downtime 10
        """
    )

    parser.add_argument("--host", required=True, help="Server hostname or IP address")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT,
                        help=f"Server port (default: {DEFAULT_PORT})")
    parser.add_argument("--transport", choices=["tcp", "udp"], default="tcp",
                        help="Transport to exercise (default: tcp)")
    parser.add_argument("--direction", choices=["cts", "stc", "both"], default="both",
                        help="UDP traffic direction (default: both)")
    parser.add_argument("--period", type=int, default=1,
                        help="Heartbeat period in seconds (default: 1)")
    parser.add_argument("--reset-every", type=int, default=0,
                        help="Tear down and reconnect every N seconds, 0 disables (default: 0)")
    parser.add_argument("--reset-downtime", type=int, default=0,
                        help="Seconds to stay disconnected after a timed reset (default: 0)")
    parser.add_argument("--connect-timeout", type=float, default=CONNECT_TIMEOUT_MS / 1000,
                        help=f"TCP connect timeout in seconds (default: {CONNECT_TIMEOUT_MS / 1000})")
    parser.add_argument("--read-timeout", type=float, default=READ_TIMEOUT_MS / 1000,
                        help=f"Read/receive timeout in seconds (default: {READ_TIMEOUT_MS / 1000})")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Console log level (default: INFO)")
    return parser


def config_from_args(parser: argparse.ArgumentParser, args) -> RunConfig:
    if args.period < 0 or args.reset_every < 0 or args.reset_downtime < 0:
        parser.error("period, reset-every and reset-downtime must be >= 0")
    try:
        return RunConfig.from_request(
            host=args.host,
            port=args.port,
            transport=args.transport,
            direction=args.direction,
            period_sec=args.period,
            reset_every_sec=args.reset_every,
            reset_downtime_sec=args.reset_downtime,
            connect_timeout_ms=int(args.connect_timeout * 1000),
            read_timeout_ms=int(args.read_timeout * 1000),
        )
    except ValueError as e:
        parser.error(str(e))


async def run(config: RunConfig):
    probe = ProbeRunner()
    await probe.start(config, on_status=_print_status)
    try:
        await probe.wait()
    finally:
        await probe.stop()


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = config_from_args(parser, args)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    print(f"\nSignaling path probe")
    print(f"Target: {config.endpoint} ({config.transport.value})")
    print(f"Press Ctrl+C at any time to stop\n")

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        print("\nStopped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
