import pytest

from webshell.orchestrator.connections import ConnectionManager
from webshell.orchestrator.protocol import Pong


class RecordingPeer:
    def __init__(self, fail=False):
        self.messages = []
        self.closed_with = None
        self.fail = fail

    @property
    def closed(self):
        return self.closed_with is not None

    async def send(self, message):
        if self.fail:
            return False
        self.messages.append(message.to_frame())
        return True

    async def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)


def test_register_and_lookup(connections):
    peer = RecordingPeer()
    info = connections.register("s1", "alice", "10.0.0.1", peer)

    assert connections.get("s1") is info
    assert connections.is_connected("s1")
    assert info.serialize()["clientIp"] == "10.0.0.1"
    assert connections.stats() == {"total": 1, "byUser": {"alice": 1}}


def test_duplicate_register_keeps_first(connections, caplog):
    first = connections.register("s1", "alice", "10.0.0.1", RecordingPeer())
    second = connections.register("s1", "alice", "10.0.0.2", RecordingPeer())
    assert second is first
    assert "already registered" in caplog.text


def test_unregister(connections):
    connections.register("s1", "alice", "10.0.0.1", RecordingPeer())
    connections.unregister("s1")
    connections.unregister("s1")
    assert connections.get("s1") is None
    assert len(connections) == 0


@pytest.mark.asyncio
async def test_send(connections):
    peer = RecordingPeer()
    connections.register("s1", "alice", "10.0.0.1", peer)
    assert await connections.send("s1", Pong(session_id="s1")) is True
    assert peer.messages[0]["type"] == "pong"
    assert await connections.send("missing", Pong()) is False


@pytest.mark.asyncio
async def test_send_to_closed_peer(connections):
    peer = RecordingPeer()
    connections.register("s1", "alice", "10.0.0.1", peer)
    await peer.close()
    assert not connections.is_connected("s1")
    assert await connections.send("s1", Pong()) is False


@pytest.mark.asyncio
async def test_notify_termination(connections):
    peer = RecordingPeer()
    connections.register("s1", "alice", "10.0.0.1", peer)

    assert await connections.notify_termination("s1", "Session terminated by administrator")

    frame = peer.messages[0]
    assert frame["type"] == "termination-notice"
    assert frame["sessionId"] == "s1"
    assert frame["reason"] == "Session terminated by administrator"


@pytest.mark.asyncio
async def test_close(connections):
    peer = RecordingPeer()
    connections.register("s1", "alice", "10.0.0.1", peer)

    await connections.close("s1", 1000, "bye")
    await connections.close("s1", 1000, "bye")

    assert peer.closed_with == (1000, "bye")
    assert connections.get("s1") is None


def test_stats_by_user():
    connections = ConnectionManager()
    connections.register("s1", "alice", "ip", RecordingPeer())
    connections.register("s2", "alice", "ip", RecordingPeer())
    connections.register("s3", "bob", "ip", RecordingPeer())
    assert connections.stats() == {"total": 3, "byUser": {"alice": 2, "bob": 1}}
