"""Deterministic topology simulation for validating Gravitation.

A fixture describes who connects to whom, which peers should share their
connecting host's profile, and which host's orbit to inspect afterwards::

    {
        "TestNetwork": {"root": ["a", "b"]},
        "TestOrbit": ["a"],
        "TestingOn": "root"
    }

``TestMatches`` optionally lists the hosts that copy their connecting host's
profile; it defaults to ``TestOrbit`` so the expected orbit is the one the
topology produces.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from nacl.public import PrivateKey
from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator

from .errors import ConfigurationError, GravitationError
from .gravity import GravitationData, MatchPolicy, exact_match
from .node import Node
from .p2p.host import PERMANENT_ADDR_TTL, Host, PeerInfo
from .p2p.memory import MemoryNetwork
from .p2p.websocket import WebSocketHost

DEFAULT_BASE_PORT = 10000
DEFAULT_SETTLE_SECONDS = 2.0

HostFactory = Callable[[PrivateKey, str], Host]


class TopologyFixture(BaseModel):
    test_network: Dict[str, List[str]] = Field(validation_alias=AliasChoices("TestNetwork", "test_network"))
    test_orbit: List[str] = Field(default_factory=list, validation_alias=AliasChoices("TestOrbit", "test_orbit"))
    testing_on: str = Field(validation_alias=AliasChoices("TestingOn", "testing_on"))
    test_matches: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("TestMatches", "test_matches")
    )

    @property
    def matches(self) -> List[str]:
        return self.test_orbit if self.test_matches is None else self.test_matches

    def host_names(self) -> List[str]:
        names = list(self.test_network)
        for peers in self.test_network.values():
            names.extend(p for p in peers if p not in names)
        return names

    @model_validator(mode="after")
    def _known_hosts(self) -> "TopologyFixture":
        hosts = set(self.host_names())
        for label, names in (
            ("TestingOn", [self.testing_on]),
            ("TestOrbit", self.test_orbit),
            ("TestMatches", self.matches),
        ):
            missing = [name for name in names if name not in hosts]
            if missing:
                raise ValueError(f"{label} names hosts missing from TestNetwork: {missing}")
        return self


def load_fixture(path: str) -> TopologyFixture:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Failed to read test fixture {path}: {exc}") from exc
    try:
        return TopologyFixture.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Malformed test fixture {path}: {exc}") from exc


def orbit_verdict(actual: List[str], expected: List[str]) -> bool:
    """Order-independent comparison of orbit peer ids."""

    return sorted(actual) == sorted(expected)


def run_marker() -> str:
    return time.strftime("%Y%m%d%H%M%S")


@dataclass
class TopologyResult:
    passed: bool
    expected: List[str]
    actual: List[str]
    nodes: Dict[str, Node]


class TopologyBuilder:
    """Instantiate the fixture's hosts and drive one capture per edge."""

    def __init__(
        self,
        fixture: TopologyFixture,
        host_factory: Optional[HostFactory] = None,
        scheme: str = "memory",
        base_port: int = DEFAULT_BASE_PORT,
        marker: Optional[str] = None,
        match: MatchPolicy = exact_match,
    ):
        if host_factory is None:
            network = MemoryNetwork()

            def host_factory(key: PrivateKey, addr: str) -> Host:
                return network.new_host(key, [addr])

        self.fixture = fixture
        self.host_factory = host_factory
        self.scheme = scheme
        self.base_port = base_port
        self.marker = marker or run_marker()
        self.match = match
        self.nodes: Dict[str, Node] = {}

    async def _instantiate(self, name: str, profile) -> Node:
        # Creation order fixes the port, so the same fixture always gets the same addresses
        addr = f"{self.scheme}://127.0.0.1:{self.base_port + len(self.nodes)}"
        host = self.host_factory(PrivateKey.generate(), addr)
        await host.start()
        node = Node(host, GravitationData(profile=tuple(profile)), self.match)
        self.nodes[name] = node
        return node

    async def _wire(self, local: Node, remote: Node) -> None:
        local.peerstore.add_addrs(remote.id, remote.addrs, PERMANENT_ADDR_TTL)
        remote.peerstore.add_addrs(local.id, local.addrs, PERMANENT_ADDR_TTL)
        print(f"[test] This is a conversation between {local.id} and {remote.id}")
        try:
            handle = await local.host.connect(PeerInfo(remote.id, tuple(remote.addrs)))
            await local.gravitation(handle)
        except GravitationError as e:
            print(f"[test] Gravitation from {local.id} to {remote.id} failed: {e}")

    async def build(self) -> Dict[str, Node]:
        matches = set(self.fixture.matches)
        for name, peers in self.fixture.test_network.items():
            if name not in self.nodes:
                await self._instantiate(name, [f"{self.marker}:{name}"])
            local = self.nodes[name]
            for peer in peers:
                if peer == name:
                    print(f"[test] Skipping self edge on {name}")
                    continue
                if peer not in self.nodes:
                    if peer in matches:
                        profile = local.grav_data.profile
                    else:
                        profile = [f"placeholder:{peer}"]
                    await self._instantiate(peer, profile)
                await self._wire(local, self.nodes[peer])
        return self.nodes

    async def close(self) -> None:
        await asyncio.gather(*(node.host.close() for node in self.nodes.values()))

    async def run(self, settle: float = DEFAULT_SETTLE_SECONDS) -> TopologyResult:
        try:
            await self.build()
            # Give asynchronous host setup time to settle
            await asyncio.sleep(settle)
            actual = sorted(self.nodes[self.fixture.testing_on].orbit_ids())
            expected = sorted(self.nodes[name].id for name in self.fixture.test_orbit)
        finally:
            await self.close()
        return TopologyResult(orbit_verdict(actual, expected), expected, actual, dict(self.nodes))


async def run_fixture_file(
    path: str,
    settle: float = DEFAULT_SETTLE_SECONDS,
    transport: str = "memory",
    match: MatchPolicy = exact_match,
    base_port: int = DEFAULT_BASE_PORT,
    log_level: str = "warning",
) -> TopologyResult:
    """Load the fixture at *path* and run it over the chosen transport."""

    fixture = load_fixture(path)
    if transport == "memory":
        builder = TopologyBuilder(fixture, base_port=base_port, match=match)
    elif transport == "ws":
        builder = TopologyBuilder(
            fixture,
            host_factory=lambda key, addr: WebSocketHost(key, [addr], log_level=log_level),
            scheme="ws",
            base_port=base_port,
            match=match,
        )
    else:
        raise ConfigurationError(f"Unknown transport: {transport}")
    return await builder.run(settle=settle)


__all__ = [
    "DEFAULT_BASE_PORT",
    "DEFAULT_SETTLE_SECONDS",
    "TopologyFixture",
    "TopologyResult",
    "TopologyBuilder",
    "load_fixture",
    "orbit_verdict",
    "run_fixture_file",
]
