"""In-process transport used by the topology harness and the tests."""

from __future__ import annotations

from typing import Dict, Optional, Sequence

from nacl.public import PrivateKey

from ..errors import ConfigurationError, PeerUnreachable
from ..utils.serialization import wire_copy
from .host import TEMP_ADDR_TTL, Host, PeerHandle, split_addr, unwrap_reply


class MemoryNetwork:
    """Registry of bound addresses, standing in for the loopback interface."""

    def __init__(self) -> None:
        self._hosts: Dict[str, "MemoryHost"] = {}

    def new_host(self, key: PrivateKey, listen_addrs: Sequence[str]) -> "MemoryHost":
        return MemoryHost(self, key, listen_addrs)

    def bind(self, host: "MemoryHost") -> None:
        taken = [addr for addr in host.addrs if addr in self._hosts]
        if taken:
            raise ConfigurationError(f"Address already in use: {', '.join(taken)}")
        for addr in host.addrs:
            self._hosts[addr] = host

    def unbind(self, host: "MemoryHost") -> None:
        for addr in host.addrs:
            if self._hosts.get(addr) is host:
                del self._hosts[addr]

    def lookup(self, addr: str) -> Optional["MemoryHost"]:
        return self._hosts.get(addr)


class MemoryPeerHandle(PeerHandle):
    def __init__(self, local: "MemoryHost", remote: "MemoryHost", addr: str):
        super().__init__(remote.id, addr)
        self.local = local
        self.remote = remote

    async def request(self, protocol: str, body: Optional[dict] = None) -> dict:
        # The remote may have gone away since the handle was opened
        if not self.alive or self.local.network.lookup(self.addr) is not self.remote:
            self.alive = False
            raise PeerUnreachable(f"Connection to {self.peer_id} is closed")
        request = wire_copy({"protocol": protocol, "body": body or {}})
        reply = await self.remote.handle_request(self.local.id, request)
        return unwrap_reply(wire_copy(reply))


class MemoryHost(Host):
    def __init__(self, network: MemoryNetwork, key: PrivateKey, listen_addrs: Sequence[str]):
        for addr in listen_addrs:
            split_addr(addr)
        super().__init__(key, listen_addrs)
        self.network = network
        self._bound = False

    async def start(self):
        if not self._bound:
            self.network.bind(self)
            self._bound = True

    async def close(self):
        await super().close()
        if self._bound:
            self.network.unbind(self)
            self._bound = False

    async def _open(self, addr: str, peer_id: str) -> PeerHandle:
        remote = self.network.lookup(addr)
        if remote is None:
            raise PeerUnreachable("connection refused")
        if peer_id and remote.id != peer_id:
            raise PeerUnreachable(f"peer id mismatch: expected {peer_id}, got {remote.id}")
        # Identify: the remote learns where to reach us
        remote.peerstore.add_addrs(self.id, self.addrs, TEMP_ADDR_TTL)
        return MemoryPeerHandle(self, remote, addr)


__all__ = ["MemoryNetwork", "MemoryHost", "MemoryPeerHandle"]
