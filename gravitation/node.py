"""A gravitation node: one host identity bound to one orbit."""

from __future__ import annotations

import asyncio
from typing import Dict, List

from .errors import ProfileUnavailable, ProtocolError
from .gravity import GravitationData, MatchPolicy, capture, exact_match
from .p2p.host import Host, PeerHandle

PROFILE_PROTOCOL = "/gravitation/profile/1.0.0"


class Node:
    """Binds a :class:`Host` to the :class:`GravitationData` it owns.

    The node answers profile requests from other peers and captures peers
    whose profile matches its own. All orbit mutation happens under
    ``self._lock`` so concurrent captures cannot duplicate or lose bodies.
    """

    def __init__(self, host: Host, grav_data: GravitationData, match: MatchPolicy = exact_match):
        self.host = host
        self.grav_data = grav_data
        self.match = match
        self._lock = asyncio.Lock()
        # Never orbit ourselves, even when the orbit came from a file
        grav_data.bodies.pop(host.id, None)
        host.set_handler(PROFILE_PROTOCOL, self._serve_profile)

    @property
    def id(self) -> str:
        return self.host.id

    @property
    def addrs(self) -> List[str]:
        return self.host.addrs

    @property
    def peerstore(self):
        return self.host.peerstore

    @property
    def profile(self) -> List[str]:
        return list(self.grav_data.profile)

    def orbit_ids(self) -> List[str]:
        return self.grav_data.orbit_ids()

    async def _serve_profile(self, sender: str, body: Dict) -> Dict:
        return {"profile": list(self.grav_data.profile)}

    async def fetch_profile(self, remote: PeerHandle) -> List[str]:
        try:
            reply = await remote.request(PROFILE_PROTOCOL)
        except ProtocolError as e:
            raise ProfileUnavailable(f"Peer {remote.peer_id} refused profile request: {e}") from e
        profile = reply.get("profile")
        if not isinstance(profile, list) or not all(isinstance(tag, str) for tag in profile):
            raise ProfileUnavailable(f"Peer {remote.peer_id} sent a malformed profile")
        return profile

    async def gravitation(self, remote: PeerHandle) -> bool:
        """Try to capture the peer behind an open handle.

        Only this node's orbit changes. Returns ``True`` if the peer was newly
        captured; raises ``PeerUnreachable`` or ``ProfileUnavailable`` without
        touching the orbit.
        """

        profile = await self.fetch_profile(remote)
        return await self._capture(remote.peer_id, profile)

    async def gravitation_peer_id(self, peer_id: str) -> bool:
        """Resolve *peer_id* through the peer store, dial it, and try to capture it."""

        handle = await self.host.dial(peer_id)
        return await self.gravitation(handle)

    async def _capture(self, peer_id: str, profile: List[str]) -> bool:
        async with self._lock:
            captured = capture(self.grav_data, self.id, peer_id, profile, self.match)
        if captured:
            print(f"[gravitation] {self.id} captured {peer_id} (orbit size {len(self.grav_data)})")
        return captured


__all__ = ["PROFILE_PROTOCOL", "Node"]
