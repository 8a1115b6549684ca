import asyncio
import base64

import pytest
from fastapi.testclient import TestClient
from nacl.public import PrivateKey, PublicKey

from gravitation.errors import ConfigurationError, PeerUnreachable, ProtocolError
from gravitation.gravity import GravitationData
from gravitation.node import PROFILE_PROTOCOL, Node
from gravitation.p2p import host as host_module
from gravitation.p2p.host import (
    PERMANENT_ADDR_TTL,
    Cipher,
    PeerInfo,
    PeerStore,
    encode_public_key,
    format_peer_addr,
    parse_peer_addr,
    peer_id_from_public_key,
    split_addr,
)
from gravitation.p2p.websocket import WebSocketHost, WebSocketPeerHandle


def test_peer_id_is_stable_hex():
    key = PrivateKey.generate()
    pid = peer_id_from_public_key(key.public_key)
    assert pid == peer_id_from_public_key(key.public_key)
    assert len(pid) == 16
    int(pid, 16)


def test_parse_peer_addr_with_and_without_id():
    info = parse_peer_addr("ws://127.0.0.1:9000/p2p/ABCDEF0123456789")
    assert info == PeerInfo("ABCDEF0123456789", ("ws://127.0.0.1:9000",))
    assert parse_peer_addr("ws://10.0.0.1:4001") == PeerInfo("", ("ws://10.0.0.1:4001",))
    assert parse_peer_addr(format_peer_addr("ID", "ws://h:1")) == PeerInfo("ID", ("ws://h:1",))


@pytest.mark.parametrize(
    "addr",
    ["127.0.0.1:9000", "ws://127.0.0.1", "ws://127.0.0.1:notaport", "ws://h:1/ipfs/ID", "ws://h:1/p2p"],
)
def test_bad_peer_addrs(addr):
    with pytest.raises(ConfigurationError):
        parse_peer_addr(addr)


def test_split_addr():
    assert split_addr("memory://127.0.0.1:10000") == ("memory", "127.0.0.1", 10000)


def test_peerstore_ttl_expiry(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(host_module.time, "time", lambda: now[0])
    store = PeerStore()
    store.add_addrs("A", ["ws://a:1"], 10)
    store.add_addrs("A", ["ws://a:2"], PERMANENT_ADDR_TTL)
    store.add_addrs("B", ["ws://b:1"], 5)
    assert sorted(store.peers()) == ["A", "B"]

    now[0] += 6
    assert store.peers() == ["A"]
    assert store.addrs("B") == []

    now[0] += 10
    assert store.addrs("A") == ["ws://a:2"]


def test_peerstore_never_shortens_ttl(monkeypatch):
    now = [0.0]
    monkeypatch.setattr(host_module.time, "time", lambda: now[0])
    store = PeerStore()
    store.add_addrs("A", ["ws://a:1"], 100)
    store.add_addrs("A", ["ws://a:1"], 1)
    now[0] = 50
    assert store.addrs("A") == ["ws://a:1"]


def test_memory_address_cannot_be_bound_twice(network):
    async def scenario():
        first = network.new_host(PrivateKey.generate(), ["memory://127.0.0.1:5000"])
        second = network.new_host(PrivateKey.generate(), ["memory://127.0.0.1:5000"])
        await first.start()
        with pytest.raises(ConfigurationError):
            await second.start()

    asyncio.run(scenario())


def test_dial_checks_peer_id(network):
    async def scenario():
        a = network.new_host(PrivateKey.generate(), ["memory://127.0.0.1:5001"])
        b = network.new_host(PrivateKey.generate(), ["memory://127.0.0.1:5002"])
        await a.start()
        await b.start()
        with pytest.raises(PeerUnreachable):
            await a.connect(PeerInfo("0000000000000000", tuple(b.addrs)))
        handle = await a.connect(PeerInfo("", tuple(b.addrs)))
        assert handle.peer_id == b.id
        # The remote learned our address from the connection
        assert b.peerstore.addrs(a.id) == a.addrs
        assert a.connected_peers() == [b.id]

    asyncio.run(scenario())


def test_host_refuses_to_dial_itself(network):
    async def scenario():
        a = network.new_host(PrivateKey.generate(), ["memory://127.0.0.1:5003"])
        await a.start()
        with pytest.raises(PeerUnreachable):
            await a.connect(PeerInfo("", tuple(a.addrs)))

    asyncio.run(scenario())


def test_websocket_host_requires_ws_scheme():
    with pytest.raises(ConfigurationError):
        WebSocketHost(PrivateKey.generate(), ["memory://127.0.0.1:1"])


@pytest.fixture
def ws_node():
    host = WebSocketHost(PrivateKey.generate(), ["ws://127.0.0.1:9100"])
    return Node(host, GravitationData(profile=("music", "chess")))


def _hello(sk: PrivateKey) -> dict:
    return {"type": "hello", "pubkey": encode_public_key(sk.public_key), "addrs": ["ws://127.0.0.1:9200"]}


def test_websocket_profile_request(ws_node):
    client_key = PrivateKey.generate()
    with TestClient(ws_node.host.app) as client:
        with client.websocket_connect("/p2p") as ws:
            ws.send_json(_hello(client_key))
            hello = ws.receive_json()
            assert hello["type"] == "hello"
            server_pk = base64.b64decode(hello["pubkey"])
            assert peer_id_from_public_key(ws_node.host.public_key) == ws_node.id
            assert hello["addrs"] == ws_node.addrs

            cipher = Cipher(client_key, PublicKey(server_pk))
            ws.send_json(cipher.seal({"protocol": PROFILE_PROTOCOL, "body": {}}))
            reply = cipher.open(ws.receive_json())
            assert reply == {"ok": True, "body": {"profile": ["music", "chess"]}}

            ws.send_json(cipher.seal({"protocol": "/nope/1.0.0", "body": {}}))
            reply = cipher.open(ws.receive_json())
            assert reply["ok"] is False

    client_id = peer_id_from_public_key(client_key.public_key)
    assert ws_node.peerstore.addrs(client_id) == ["ws://127.0.0.1:9200"]


def test_websocket_rejects_bad_hello(ws_node):
    with TestClient(ws_node.host.app) as client:
        with client.websocket_connect("/p2p") as ws:
            ws.send_json({"type": "hi"})
            message = ws.receive()
            assert message["type"] == "websocket.close"
            assert message["code"] == 4000


def test_websocket_garbage_frame_gets_error_reply(ws_node):
    client_key = PrivateKey.generate()
    with TestClient(ws_node.host.app) as client:
        with client.websocket_connect("/p2p") as ws:
            ws.send_json(_hello(client_key))
            hello = ws.receive_json()

            cipher = Cipher(client_key, PublicKey(base64.b64decode(hello["pubkey"])))
            ws.send_json({"type": "cipher", "v": 1, "blob": base64.b64encode(b"garbage" * 8).decode("ascii")})
            reply = cipher.open(ws.receive_json())
            assert reply == {"ok": False, "error": "malformed frame"}


def test_peers_endpoint(ws_node):
    ws_node.peerstore.add_addrs("OTHER", ["ws://10.0.0.2:9000"], PERMANENT_ADDR_TTL)
    with TestClient(ws_node.host.app) as client:
        response = client.get("/p2p/peers")
        assert response.status_code == 200
        payload = response.json()
        assert payload["id"] == ws_node.id
        assert payload["peers"] == ["OTHER"]
        assert payload["connected"] == []


def test_websocket_hello_with_bad_addrs(ws_node):
    client_key = PrivateKey.generate()
    with TestClient(ws_node.host.app) as client:
        with client.websocket_connect("/p2p") as ws:
            ws.send_json({"type": "hello", "pubkey": encode_public_key(client_key.public_key), "addrs": 5})
            hello = ws.receive_json()

            cipher = Cipher(client_key, PublicKey(base64.b64decode(hello["pubkey"])))
            ws.send_json(cipher.seal({"protocol": PROFILE_PROTOCOL, "body": {}}))
            assert cipher.open(ws.receive_json())["ok"] is True

    assert ws_node.peerstore.addrs(peer_id_from_public_key(client_key.public_key)) == []


class ScriptedSocket:
    """Client socket stand-in that answers every request with canned frames."""

    def __init__(self, *frames):
        self.frames = list(frames)
        self.sent = []

    async def send(self, data):
        self.sent.append(data)

    async def recv(self):
        return self.frames.pop(0)

    async def close(self):
        pass


@pytest.mark.parametrize("frame", ["garbage", "[1, 2]", '{"type": "cipher", "blob": "!!"}'])
def test_websocket_handle_rejects_unreadable_replies(frame):
    local, remote = PrivateKey.generate(), PrivateKey.generate()
    handle = WebSocketPeerHandle(ScriptedSocket(frame), "REMOTE", "ws://127.0.0.1:9300", Cipher(local, remote.public_key))

    with pytest.raises(ProtocolError):
        asyncio.run(handle.request(PROFILE_PROTOCOL))
    # The connection itself is still usable
    assert handle.alive
