import asyncio
import base64
import hashlib
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from nacl.public import Box, PrivateKey, PublicKey
from nacl.utils import random as nacl_random

from ..errors import ConfigurationError, PeerUnreachable, ProtocolError
from ..utils.serialization import dumps, loads

# ------------------------------------------------------------------------------
# Address TTLs
# ------------------------------------------------------------------------------
PERMANENT_ADDR_TTL = math.inf
CONNECTED_ADDR_TTL = 600.0
TEMP_ADDR_TTL = 120.0

Handler = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


# ------------------------------------------------------------------------------
# Identity
# ------------------------------------------------------------------------------
def peer_id_from_public_key(pk: PublicKey) -> str:
    return base64.b16encode(hashlib.sha256(bytes(pk)).digest()[:8]).decode("ascii")


def encode_public_key(pk: PublicKey) -> str:
    return base64.b64encode(bytes(pk)).decode("ascii")


def decode_public_key(value: str) -> PublicKey:
    return PublicKey(base64.b64decode(value))


class Cipher:
    def __init__(self, sk: PrivateKey, pk: PublicKey):
        self.box = Box(sk, pk)

    def encrypt(self, payload: bytes) -> bytes:
        nonce = nacl_random(Box.NONCE_SIZE)
        return self.box.encrypt(payload, nonce)

    def decrypt(self, blob: bytes) -> bytes:
        return self.box.decrypt(blob)

    def seal(self, obj: dict) -> dict:
        # Encrypt JSON payload and wrap it as a base64 frame
        blob = self.encrypt(dumps(obj))
        return {"type": "cipher", "v": 1, "blob": base64.b64encode(blob).decode("ascii")}

    def open(self, frame: dict) -> dict:
        return loads(self.decrypt(base64.b64decode(frame["blob"])))


# ------------------------------------------------------------------------------
# Addresses
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class PeerInfo:
    peer_id: str
    addrs: Tuple[str, ...] = ()


def split_addr(addr: str) -> Tuple[str, str, int]:
    """Return ``(scheme, host, port)`` for a ``scheme://host:port`` address."""

    parsed = urlparse(addr)
    try:
        port = parsed.port
    except ValueError as exc:
        raise ConfigurationError(f"Invalid port in address: {addr}") from exc
    if not parsed.scheme or not parsed.hostname or port is None:
        raise ConfigurationError(f"Address must look like scheme://host:port, got {addr!r}")
    return parsed.scheme, parsed.hostname, port


def parse_peer_addr(addr: str) -> PeerInfo:
    """Split ``ws://host:port/p2p/<peer_id>`` into a :class:`PeerInfo`.

    The peer id part is optional; an empty id accepts whoever answers.
    """

    scheme, hostname, port = split_addr(addr)
    parts = [p for p in urlparse(addr).path.split("/") if p]
    peer_id = ""
    if parts:
        if len(parts) != 2 or parts[0] != "p2p":
            raise ConfigurationError(f"Peer address path must be /p2p/<peer_id>, got {addr!r}")
        peer_id = parts[1]
    return PeerInfo(peer_id=peer_id, addrs=(f"{scheme}://{hostname}:{port}",))


def format_peer_addr(peer_id: str, addr: str) -> str:
    return f"{addr}/p2p/{peer_id}"


# ------------------------------------------------------------------------------
# Peer store
# ------------------------------------------------------------------------------
class PeerStore:
    """Address book: peer id -> {addr: expiry timestamp}."""

    def __init__(self):
        self._addrs: Dict[str, Dict[str, float]] = {}

    def add_addrs(self, peer_id: str, addrs: Iterable[str], ttl: float) -> None:
        expires = time.time() + ttl
        book = self._addrs.setdefault(peer_id, {})
        for addr in addrs:
            # Never shorten an existing TTL
            book[addr] = max(book.get(addr, 0.0), expires)

    def prune(self) -> None:
        now = time.time()
        for peer_id in list(self._addrs):
            book = self._addrs[peer_id]
            for addr in [a for a, exp in book.items() if exp <= now]:
                book.pop(addr, None)
            if not book:
                self._addrs.pop(peer_id, None)

    def addrs(self, peer_id: str) -> List[str]:
        self.prune()
        return list(self._addrs.get(peer_id, {}))

    def peer_info(self, peer_id: str) -> PeerInfo:
        return PeerInfo(peer_id=peer_id, addrs=tuple(self.addrs(peer_id)))

    def peers(self) -> List[str]:
        self.prune()
        return list(self._addrs)


# ------------------------------------------------------------------------------
# Handles and hosts
# ------------------------------------------------------------------------------
def unwrap_reply(reply: dict) -> Dict[str, Any]:
    if not isinstance(reply, dict):
        raise ProtocolError("Reply is not an object")
    if not reply.get("ok"):
        raise ProtocolError(str(reply.get("error") or "request failed"))
    body = reply.get("body")
    return body if isinstance(body, dict) else {}


class PeerHandle:
    """An open connection to a remote peer."""

    def __init__(self, peer_id: str, addr: str):
        self.peer_id = peer_id
        self.addr = addr
        self.alive = True

    async def request(self, protocol: str, body: Optional[dict] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self):
        self.alive = False


class Host:
    """Identity, addresses, address book and protocol handlers of one peer.

    Subclasses provide the transport through :meth:`_open`.
    """

    def __init__(self, key: PrivateKey, listen_addrs: Sequence[str]):
        self.key = key
        self.public_key = key.public_key
        self._id = peer_id_from_public_key(self.public_key)
        self._addrs = list(listen_addrs)
        self.peerstore = PeerStore()
        self._handlers: Dict[str, Handler] = {}
        self._conns: Dict[str, PeerHandle] = {}

    @property
    def id(self) -> str:
        return self._id

    @property
    def addrs(self) -> List[str]:
        return list(self._addrs)

    def set_handler(self, protocol: str, handler: Handler) -> None:
        self._handlers[protocol] = handler

    async def handle_request(self, sender: str, request: dict) -> Dict[str, Any]:
        protocol = request.get("protocol")
        handler = self._handlers.get(protocol)
        if handler is None:
            return {"ok": False, "error": f"protocol not supported: {protocol}"}
        body = request.get("body")
        try:
            result = await handler(sender, body if isinstance(body, dict) else {})
        except (KeyError, TypeError, ValueError) as e:
            return {"ok": False, "error": f"bad request: {e}"}
        return {"ok": True, "body": result}

    def connected_peers(self) -> List[str]:
        return [pid for pid, handle in self._conns.items() if handle.alive]

    async def connect(self, info: PeerInfo) -> PeerHandle:
        """Return a live handle to *info*, dialing its addresses if needed."""

        if info.peer_id == self.id:
            raise PeerUnreachable("Refusing to dial self")
        existing = self._conns.get(info.peer_id)
        if existing and existing.alive:
            return existing

        addrs = list(info.addrs) or self.peerstore.addrs(info.peer_id)
        if not addrs:
            raise PeerUnreachable(f"No addresses known for peer {info.peer_id}")

        errors = []
        for addr in addrs:
            try:
                handle = await self._open(addr, info.peer_id)
            except PeerUnreachable as e:
                errors.append(f"{addr}: {e}")
                continue
            if handle.peer_id == self.id:
                await handle.close()
                errors.append(f"{addr}: address belongs to this host")
                continue
            self._conns[handle.peer_id] = handle
            self.peerstore.add_addrs(handle.peer_id, [addr], CONNECTED_ADDR_TTL)
            return handle
        raise PeerUnreachable(f"Could not reach {info.peer_id or addrs}: {'; '.join(errors)}")

    async def dial(self, peer_id: str) -> PeerHandle:
        return await self.connect(self.peerstore.peer_info(peer_id))

    async def _open(self, addr: str, peer_id: str) -> PeerHandle:
        raise NotImplementedError

    async def start(self):
        pass

    async def close(self):
        conns = list(self._conns.values())
        self._conns.clear()
        await asyncio.gather(*(c.close() for c in conns), return_exceptions=True)


__all__ = [
    "PERMANENT_ADDR_TTL",
    "CONNECTED_ADDR_TTL",
    "TEMP_ADDR_TTL",
    "peer_id_from_public_key",
    "encode_public_key",
    "decode_public_key",
    "Cipher",
    "PeerInfo",
    "split_addr",
    "parse_peer_addr",
    "format_peer_addr",
    "PeerStore",
    "unwrap_reply",
    "PeerHandle",
    "Host",
]
