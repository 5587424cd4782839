"""
Per-transport event logging.

Provides dual output: a bounded in-memory buffer for the status API and
rotating file logs for backup. Each transport gets its own log file in
data/logs/{transport}.log. Nothing survives a restart except the file.
"""

import logging
import os
import threading
from collections import deque
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Configure base logger
logger = logging.getLogger(__name__)

LOG_DIR = Path(
    os.getenv("SIGPROBE_LOG_DIR", Path(os.path.dirname(os.path.dirname(__file__))) / "data" / "logs")
)

# In-memory buffer size (most recent events kept)
EVENT_BUFFER_SIZE = int(os.getenv("EVENT_BUFFER_SIZE", "500"))

LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
CATEGORIES = ["CONNECT", "TX", "RX", "RESET", "BACKOFF", "STATE"]

_events: deque = deque(maxlen=EVENT_BUFFER_SIZE)
_events_lock = threading.Lock()
_next_id = 0

# Per-transport file loggers (cached)
_file_loggers: dict = {}


def _get_file_logger(transport: str) -> logging.Logger:
    """Get or create a file logger for a transport."""
    if transport in _file_loggers:
        return _file_loggers[transport]

    probe_logger = logging.getLogger(f"probe.{transport}")
    probe_logger.setLevel(logging.DEBUG)

    # Avoid duplicate handlers
    if not probe_logger.handlers:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOG_DIR / f"{transport}.log",
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=3,
            encoding="utf-8"
        )
        handler.setLevel(logging.DEBUG)

        # Format: timestamp [LEVEL] [CATEGORY] message
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(category)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        probe_logger.addHandler(handler)

        # Don't propagate to root logger
        probe_logger.propagate = False

    _file_loggers[transport] = probe_logger
    return probe_logger


def log_probe_event(transport: str, level: str, category: str, message: str):
    """
    Record an event for the active probe.

    Writes to both:
    1. In-memory ring buffer for the status API
    2. File (data/logs/{transport}.log) for debugging

    Args:
        transport: "tcp" or "udp"
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        category: Event category (CONNECT, TX, RX, RESET, BACKOFF, STATE)
        message: Log message
    """
    global _next_id

    with _events_lock:
        _next_id += 1
        _events.append({
            "id": _next_id,
            "timestamp": datetime.utcnow(),
            "transport": transport,
            "level": level.upper(),
            "category": category.upper(),
            "message": message,
        })

    try:
        file_logger = _get_file_logger(transport)
        log_func = getattr(file_logger, level.lower(), file_logger.info)
        # Pass category as extra for formatter
        log_func(message, extra={"category": category.upper()})
    except Exception as e:
        logger.warning(f"Failed to write file log for {transport}: {e}")


def get_probe_events(
    limit: int = 100,
    level: Optional[str] = None,
    category: Optional[str] = None,
    since: Optional[datetime] = None,
) -> list:
    """
    Query buffered events, newest first.

    Args:
        limit: Max entries to return (default: 100)
        level: Filter by level
        category: Filter by category
        since: Filter entries at or after this timestamp
    """
    with _events_lock:
        entries = list(_events)

    if level:
        entries = [e for e in entries if e["level"] == level.upper()]
    if category:
        entries = [e for e in entries if e["category"] == category.upper()]
    if since:
        entries = [e for e in entries if e["timestamp"] >= since]

    entries.reverse()
    return [
        {**e, "timestamp": e["timestamp"].isoformat() + "Z"}
        for e in entries[:limit]
    ]


def get_event_stats() -> dict:
    """
    Counts of buffered events by level and category.
    """
    with _events_lock:
        entries = list(_events)

    level_counts = {}
    for level in LEVELS:
        count = sum(1 for e in entries if e["level"] == level)
        if count > 0:
            level_counts[level] = count

    category_counts = {}
    for category in CATEGORIES:
        count = sum(1 for e in entries if e["category"] == category)
        if count > 0:
            category_counts[category] = count

    return {
        "total": len(entries),
        "by_level": level_counts,
        "by_category": category_counts,
        "oldest": entries[0]["timestamp"].isoformat() + "Z" if entries else None,
        "newest": entries[-1]["timestamp"].isoformat() + "Z" if entries else None,
    }


def clear_probe_events():
    with _events_lock:
        _events.clear()
