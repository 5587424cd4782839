import os
import tempfile

# Keep file logs out of the working tree; must happen before sigprobe imports
_LOG_ROOT = tempfile.mkdtemp(prefix="sigprobe-tests-")
os.environ.setdefault("SIGPROBE_LOG_DIR", os.path.join(_LOG_ROOT, "logs"))
os.environ.setdefault("SIGPROBE_LOG_FILE", os.path.join(_LOG_ROOT, "sigprobe.log"))

import pytest

from sigprobe.event_log import clear_probe_events
from tests.servers import TcpReplyServer, UdpReplyServer


@pytest.fixture(autouse=True)
def fresh_events():
    clear_probe_events()
    yield
    clear_probe_events()


@pytest.fixture
def tcp_reply_server():
    server = TcpReplyServer()
    server.start()
    server.wait_ready()
    yield server
    server.stop()


@pytest.fixture
def udp_reply_server():
    server = UdpReplyServer()
    server.start()
    server.wait_ready()
    yield server
    server.stop()
