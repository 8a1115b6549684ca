import asyncio

import pytest
from nacl.public import PrivateKey

from gravitation.errors import PeerUnreachable, ProfileUnavailable
from gravitation.gravity import Body, GravitationData
from gravitation.node import PROFILE_PROTOCOL, Node
from gravitation.p2p.host import PeerInfo


def test_capture_by_handle_is_directional(make_node, introduce):
    async def scenario():
        a = await make_node(["music", "chess"])
        b = await make_node(["music", "chess"])
        introduce(a, b)
        handle = await a.host.connect(PeerInfo(b.id, tuple(b.addrs)))
        assert await a.gravitation(handle) is True
        return a, b

    a, b = asyncio.run(scenario())
    assert a.orbit_ids() == [b.id]
    assert a.grav_data.orbit[0].captured_profile == ["music", "chess"]
    assert b.orbit_ids() == []


def test_mutual_capture_takes_two_calls(make_node, introduce):
    async def scenario():
        a = await make_node(["x"])
        b = await make_node(["x"])
        introduce(a, b)
        await a.gravitation_peer_id(b.id)
        await b.gravitation_peer_id(a.id)
        return a, b

    a, b = asyncio.run(scenario())
    assert a.orbit_ids() == [b.id]
    assert b.orbit_ids() == [a.id]


def test_capture_by_identifier(make_node, introduce):
    async def scenario():
        a = await make_node(["x", "y"])
        b = await make_node(["x", "y"])
        c = await make_node(["y", "x"])
        introduce(a, b)
        introduce(a, c)
        return a, b, c, await a.gravitation_peer_id(b.id), await a.gravitation_peer_id(c.id)

    a, b, c, got_b, got_c = asyncio.run(scenario())
    assert got_b is True
    assert got_c is False
    assert a.orbit_ids() == [b.id]


def test_repeated_gravitation_is_idempotent(make_node, introduce):
    async def scenario():
        a = await make_node(["x"])
        b = await make_node(["x"])
        introduce(a, b)
        results = [await a.gravitation_peer_id(b.id) for _ in range(3)]
        return a, results

    a, results = asyncio.run(scenario())
    assert results == [True, False, False]
    assert len(a.grav_data) == 1


def test_concurrent_captures_never_duplicate(make_node, introduce):
    async def scenario():
        a = await make_node(["x"])
        peers = [await make_node(["x"]) for _ in range(5)]
        for p in peers:
            introduce(a, p)
        calls = [a.gravitation_peer_id(p.id) for p in peers for _ in range(4)]
        results = await asyncio.gather(*calls)
        return a, peers, results

    a, peers, results = asyncio.run(scenario())
    assert results.count(True) == 5
    assert sorted(a.orbit_ids()) == sorted(p.id for p in peers)
    assert len(set(a.orbit_ids())) == len(a.orbit_ids())


def test_captures_wait_for_the_orbit_lock(make_node, introduce):
    async def scenario():
        a = await make_node(["x"])
        b = await make_node(["x"])
        introduce(a, b)
        async with a._lock:
            calls = [asyncio.create_task(a.gravitation_peer_id(b.id)) for _ in range(3)]
            for _ in range(20):
                await asyncio.sleep(0)
            # Profiles are fetched, but nobody touches the orbit while it is locked
            assert a.orbit_ids() == []
            assert not any(task.done() for task in calls)
        results = await asyncio.gather(*calls)
        return a, b, results

    a, b, results = asyncio.run(scenario())
    assert sorted(results) == [False, False, True]
    assert a.orbit_ids() == [b.id]


def test_unknown_peer_is_unreachable(make_node):
    async def scenario():
        a = await make_node(["x"])
        with pytest.raises(PeerUnreachable):
            await a.gravitation_peer_id("DEADBEEFDEADBEEF")
        return a

    a = asyncio.run(scenario())
    assert a.orbit_ids() == []


def test_peer_gone_after_introduction(make_node, introduce):
    async def scenario():
        a = await make_node(["x"])
        b = await make_node(["x"])
        introduce(a, b)
        await b.host.close()
        with pytest.raises(PeerUnreachable):
            await a.gravitation_peer_id(b.id)
        return a

    a = asyncio.run(scenario())
    assert a.orbit_ids() == []


def test_open_handle_to_closed_peer(make_node, introduce):
    async def scenario():
        a = await make_node(["x"])
        b = await make_node(["x"])
        introduce(a, b)
        handle = await a.host.connect(PeerInfo(b.id, tuple(b.addrs)))
        await b.host.close()
        with pytest.raises(PeerUnreachable):
            await a.gravitation(handle)
        return a

    a = asyncio.run(scenario())
    assert a.orbit_ids() == []


def test_peer_without_profile_protocol(network, make_node):
    async def scenario():
        a = await make_node(["x"])
        bare = network.new_host(PrivateKey.generate(), ["memory://127.0.0.1:30000"])
        await bare.start()
        a.peerstore.add_addrs(bare.id, bare.addrs, 60)
        with pytest.raises(ProfileUnavailable):
            await a.gravitation_peer_id(bare.id)
        return a

    a = asyncio.run(scenario())
    assert a.orbit_ids() == []


def test_malformed_profile_reply(network, make_node):
    async def scenario():
        a = await make_node(["x"])
        liar = network.new_host(PrivateKey.generate(), ["memory://127.0.0.1:30001"])

        async def bad_profile(sender, body):
            return {"profile": "x"}

        liar.set_handler(PROFILE_PROTOCOL, bad_profile)
        await liar.start()
        a.peerstore.add_addrs(liar.id, liar.addrs, 60)
        with pytest.raises(ProfileUnavailable):
            await a.gravitation_peer_id(liar.id)
        return a

    a = asyncio.run(scenario())
    assert a.orbit_ids() == []


def test_node_serves_its_profile(make_node, introduce):
    async def scenario():
        a = await make_node(["x"])
        b = await make_node(["p", "q"])
        introduce(a, b)
        handle = await a.host.dial(b.id)
        return await a.fetch_profile(handle)

    assert asyncio.run(scenario()) == ["p", "q"]


def test_node_drops_own_id_from_loaded_orbit(network):
    key = PrivateKey.generate()
    host = network.new_host(key, ["memory://127.0.0.1:30002"])
    data = GravitationData.from_orbit(["x"], [Body(host.id, ["x"]), Body("OTHER", ["x"])])
    node = Node(host, data)
    assert node.orbit_ids() == ["OTHER"]
