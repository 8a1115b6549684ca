"""Rendezvous: peers advertise under a shared key and discover each other.

Every host runs a :class:`RendezvousService`. Nodes register with the
services of their bootstrap peers, and :meth:`RoutingDiscovery.find_peers`
polls those registries for newcomers.
"""

import asyncio
import time
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from ..errors import GravitationError, PeerUnreachable
from .host import PERMANENT_ADDR_TTL, TEMP_ADDR_TTL, Host, PeerHandle, PeerInfo, parse_peer_addr

REGISTER_PROTOCOL = "/rendezvous/register/1.0.0"
DISCOVER_PROTOCOL = "/rendezvous/discover/1.0.0"

DEFAULT_ADVERTISE_TTL = 3600.0
MAX_ADVERTISE_TTL = 3 * 3600.0
DEFAULT_POLL_INTERVAL = 5.0


class RendezvousService:
    """Namespace registry served to other peers."""

    def __init__(self, host: Host):
        self.host = host
        # ns -> peer_id -> (addrs, expires_at)
        self._records: Dict[str, Dict[str, Tuple[Tuple[str, ...], float]]] = {}
        host.set_handler(REGISTER_PROTOCOL, self._on_register)
        host.set_handler(DISCOVER_PROTOCOL, self._on_discover)

    def register(self, ns: str, info: PeerInfo, ttl: float) -> None:
        self._records.setdefault(ns, {})[info.peer_id] = (tuple(info.addrs), time.time() + ttl)

    def prune(self) -> None:
        now = time.time()
        for ns in list(self._records):
            regs = self._records[ns]
            for pid in [p for p, (_, exp) in regs.items() if exp <= now]:
                regs.pop(pid, None)
            if not regs:
                self._records.pop(ns, None)

    def discover(self, ns: str) -> List[PeerInfo]:
        self.prune()
        return [PeerInfo(pid, addrs) for pid, (addrs, _) in self._records.get(ns, {}).items()]

    async def _on_register(self, sender: str, body: dict) -> dict:
        ns = str(body["ns"])
        addrs = body.get("addrs") or []
        if not isinstance(addrs, list) or not all(isinstance(a, str) for a in addrs):
            raise ValueError("addrs must be a list of strings")
        ttl = min(float(body.get("ttl", DEFAULT_ADVERTISE_TTL)), MAX_ADVERTISE_TTL)
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        # A peer can only register itself: the sender id comes from the connection
        self.register(ns, PeerInfo(sender, tuple(addrs)), ttl)
        return {"ttl": ttl}

    async def _on_discover(self, sender: str, body: dict) -> dict:
        ns = str(body["ns"])
        return {"peers": [{"peer_id": p.peer_id, "addrs": list(p.addrs)} for p in self.discover(ns)]}


async def bootstrap(host: Host, peer_addrs: Sequence[str]) -> List[PeerHandle]:
    """Connect to every bootstrap address concurrently; failures are only logged."""

    async def _connect(addr: str) -> Optional[PeerHandle]:
        info = parse_peer_addr(addr)
        try:
            handle = await host.connect(info)
        except PeerUnreachable as e:
            print(f"[p2p] Bootstrap connection to {addr} failed: {e}")
            return None
        host.peerstore.add_addrs(handle.peer_id, info.addrs, PERMANENT_ADDR_TTL)
        print(f"[p2p] Connection established with bootstrap node: {handle.peer_id}")
        return handle

    results = await asyncio.gather(*(_connect(addr) for addr in peer_addrs))
    return [handle for handle in results if handle is not None]


class RoutingDiscovery:
    def __init__(
        self,
        host: Host,
        service: RendezvousService,
        bootstrap_peers: Sequence[PeerHandle] = (),
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.host = host
        self.service = service
        self.poll_interval = poll_interval
        self._bootstrap = [PeerInfo(h.peer_id, (h.addr,)) for h in bootstrap_peers]

    async def _call(self, info: PeerInfo, protocol: str, body: dict) -> Optional[dict]:
        # connect() hands back the live handle, or redials a dropped one
        try:
            handle = await self.host.connect(info)
            return await handle.request(protocol, body)
        except GravitationError as e:
            print(f"[rendezvous] {protocol} via {info.peer_id} failed: {e}")
            return None

    async def _register_all(self, ns: str, ttl: float) -> None:
        self.service.register(ns, PeerInfo(self.host.id, tuple(self.host.addrs)), ttl)
        body = {"ns": ns, "addrs": self.host.addrs, "ttl": ttl}
        await asyncio.gather(*(self._call(info, REGISTER_PROTOCOL, body) for info in self._bootstrap))

    async def advertise(self, ns: str, ttl: float = DEFAULT_ADVERTISE_TTL) -> asyncio.Task:
        """Register under *ns* now, and keep re-registering every half TTL."""

        await self._register_all(ns, ttl)

        async def _refresh():
            while True:
                await asyncio.sleep(ttl / 2)
                await self._register_all(ns, ttl)

        return asyncio.create_task(_refresh())

    async def _query(self, ns: str) -> List[PeerInfo]:
        found = list(self.service.discover(ns))
        replies = await asyncio.gather(*(self._call(info, DISCOVER_PROTOCOL, {"ns": ns}) for info in self._bootstrap))
        for info, reply in zip(self._bootstrap, replies):
            if not reply:
                continue
            entries = reply.get("peers")
            if not isinstance(entries, list):
                print(f"[rendezvous] Ignoring malformed discover reply from {info.peer_id}")
                continue
            for entry in entries:
                try:
                    peer_id, addrs = str(entry["peer_id"]), entry["addrs"]
                except (KeyError, TypeError):
                    continue
                if isinstance(addrs, list):
                    found.append(PeerInfo(peer_id, tuple(str(a) for a in addrs)))
        return found

    async def find_peers(self, ns: str) -> AsyncIterator[PeerInfo]:
        """Yield every peer registered under *ns*, each one once, forever."""

        seen = set()
        while True:
            try:
                found = await self._query(ns)
            except (GravitationError, KeyError, TypeError, ValueError) as e:
                print(f"[rendezvous] Discovery round for {ns!r} failed: {e}")
                found = []
            for info in found:
                if info.peer_id in seen:
                    continue
                seen.add(info.peer_id)
                if info.peer_id != self.host.id:
                    self.host.peerstore.add_addrs(info.peer_id, info.addrs, TEMP_ADDR_TTL)
                yield info
            await asyncio.sleep(self.poll_interval)


__all__ = [
    "REGISTER_PROTOCOL",
    "DISCOVER_PROTOCOL",
    "DEFAULT_ADVERTISE_TTL",
    "DEFAULT_POLL_INTERVAL",
    "RendezvousService",
    "RoutingDiscovery",
    "bootstrap",
]
