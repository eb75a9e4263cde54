import json
import os
import sys
import pytest

# ──────────────────────────────────────────────────────────────────────────────
# Make sure the `server/` dir (the parent of tests/) is on sys.path so that
# `import handlers.relay` (and all the other imports) work.
# ──────────────────────────────────────────────────────────────────────────────
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# fmt: off
from handlers.relay import SignalingRelay
from services.channels import Channel
from services.registry import PresenceRegistry
# fmt: on


class MemoryChannel(Channel):
    """Channel that keeps envelopes in memory so tests can inspect them."""

    transport = "memory"

    def received(self):
        return [json.loads(raw) for raw in self.pending()]

    def events(self, msg_type=None):
        return [m for m in self.received() if msg_type is None or m["msg_type"] == msg_type]


@pytest.fixture
def registry():
    return PresenceRegistry()


@pytest.fixture
def relay(registry):
    return SignalingRelay(registry)


@pytest.fixture
def connect(relay):
    """Open an in-memory channel on the relay, discarding its welcome message."""
    def _connect(connection_id):
        channel = MemoryChannel(connection_id)
        relay.connect(channel)
        channel.pending()
        return channel
    return _connect
