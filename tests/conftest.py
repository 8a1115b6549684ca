import itertools
import json

import pytest
from nacl.public import PrivateKey

from gravitation.gravity import GravitationData, exact_match
from gravitation.node import Node
from gravitation.p2p.host import PERMANENT_ADDR_TTL
from gravitation.p2p.memory import MemoryNetwork


@pytest.fixture
def network():
    return MemoryNetwork()


@pytest.fixture
def make_node(network):
    """Return a coroutine factory for started nodes on the shared in-memory network."""

    ports = itertools.count(20000)

    async def _make(profile=("test",), match=exact_match):
        host = network.new_host(PrivateKey.generate(), [f"memory://127.0.0.1:{next(ports)}"])
        await host.start()
        return Node(host, GravitationData(profile=tuple(profile)), match)

    return _make


@pytest.fixture
def introduce():
    """Make two nodes know each other's addresses, as the harness does."""

    def _introduce(a: Node, b: Node) -> None:
        a.peerstore.add_addrs(b.id, b.addrs, PERMANENT_ADDR_TTL)
        b.peerstore.add_addrs(a.id, a.addrs, PERMANENT_ADDR_TTL)

    return _introduce


@pytest.fixture
def write_json(tmp_path):
    def _write(name, payload):
        path = tmp_path / name
        path.write_text(json.dumps(payload), encoding="utf-8")
        return str(path)

    return _write
