import asyncio
import contextlib
import json as std_json
import traceback
from typing import List, Optional, Sequence

import uvicorn
import websockets
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from nacl.exceptions import CryptoError
from nacl.public import PrivateKey
from python_socks import ProxyError
from python_socks.async_.asyncio import Proxy
from starlette.websockets import WebSocketState
from websockets.exceptions import WebSocketException

from .. import __version__
from ..errors import ConfigurationError, PeerUnreachable, ProtocolError
from .host import (
    TEMP_ADDR_TTL,
    Cipher,
    Host,
    PeerHandle,
    decode_public_key,
    encode_public_key,
    peer_id_from_public_key,
    split_addr,
    unwrap_reply,
)

_DIAL_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException, ProxyError)


def _hello_addrs(hello: dict) -> List[str]:
    addrs = hello.get("addrs")
    if not isinstance(addrs, list):
        return []
    return [a for a in addrs if isinstance(a, str)]


# ------------------------------------------------------------------------------
# Outbound connection
# ------------------------------------------------------------------------------
class WebSocketPeerHandle(PeerHandle):
    def __init__(self, ws, peer_id: str, addr: str, cipher: Cipher):
        super().__init__(peer_id, addr)
        self.ws = ws
        self.cipher = cipher
        self._lock = asyncio.Lock()

    async def request(self, protocol: str, body: Optional[dict] = None) -> dict:
        if not self.alive:
            raise PeerUnreachable(f"Connection to {self.peer_id} is closed")
        # One request in flight per connection
        async with self._lock:
            try:
                await self.ws.send(std_json.dumps(self.cipher.seal({"protocol": protocol, "body": body or {}})))
                raw = await self.ws.recv()
            except (WebSocketException, OSError) as e:
                self.alive = False
                raise PeerUnreachable(f"Connection to {self.peer_id} lost: {e}") from e
        try:
            frame = std_json.loads(raw)
        except ValueError as e:
            raise ProtocolError(f"Non-JSON frame from {self.peer_id}") from e
        try:
            reply = self.cipher.open(frame)
        except (CryptoError, KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Unreadable reply from {self.peer_id}") from e
        return unwrap_reply(reply)

    async def close(self):
        self.alive = False
        await self.ws.close()


class _Server(uvicorn.Server):
    # Signals belong to the gravitation process, not to each listener
    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


# ------------------------------------------------------------------------------
# Host
# ------------------------------------------------------------------------------
class WebSocketHost(Host):
    """Host reachable at ``ws://host:port/p2p``.

    Every connection starts with a hello exchange of identity public keys.
    After that, requests and replies travel as NaCl ``Box`` encrypted frames,
    so only the holder of the identity key can speak for its peer id.
    """

    def __init__(
        self,
        key: PrivateKey,
        listen_addrs: Sequence[str],
        proxy_url: Optional[str] = None,
        log_level: str = "warning",
    ):
        for addr in listen_addrs:
            scheme, _, _ = split_addr(addr)
            if scheme != "ws":
                raise ConfigurationError(f"WebSocket host cannot listen on {addr}")
        super().__init__(key, listen_addrs)
        self.proxy_url = proxy_url
        self.log_level = log_level
        self._servers: List[uvicorn.Server] = []
        self._tasks: List[asyncio.Task] = []

        self.app = FastAPI(title="gravitation node", version=__version__)
        self.app.add_api_websocket_route("/p2p", self._p2p_socket)
        self.app.add_api_route("/p2p/peers", self._p2p_peers, methods=["GET"])

    def _hello(self) -> dict:
        return {"type": "hello", "pubkey": encode_public_key(self.public_key), "addrs": self.addrs}

    # --------------------------------------------------------------------------
    # Listener
    # --------------------------------------------------------------------------
    async def start(self):
        bound = []
        for addr in self._addrs:
            _, hostname, port = split_addr(addr)
            config = uvicorn.Config(self.app, host=hostname, port=port, log_level=self.log_level, lifespan="off")
            server = _Server(config)
            task = asyncio.create_task(server.serve())
            while not server.started:
                if task.done():
                    raise ConfigurationError(f"Could not listen on {addr}")
                await asyncio.sleep(0.05)
            self._servers.append(server)
            self._tasks.append(task)

            # Port 0 asks the OS for a free port; advertise the real one
            actual_port = server.servers[0].sockets[0].getsockname()[1]
            advertised = "127.0.0.1" if hostname in ("0.0.0.0", "::") else hostname
            bound.append(f"ws://{advertised}:{actual_port}")
            print(f"[p2p] Listening on {bound[-1]} as {self.id}")
        self._addrs = bound

    async def close(self):
        await super().close()
        for server in self._servers:
            server.should_exit = True
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._servers.clear()
        self._tasks.clear()

    # --------------------------------------------------------------------------
    # Dialer
    # --------------------------------------------------------------------------
    async def _open(self, addr: str, peer_id: str) -> PeerHandle:
        connect_kwargs = {}
        try:
            if self.proxy_url:
                _, dest_host, dest_port = split_addr(addr)
                proxy = Proxy.from_url(self.proxy_url)
                connect_kwargs["sock"] = await proxy.connect(dest_host=dest_host, dest_port=dest_port)
            ws = await websockets.connect(addr + "/p2p", max_size=None, **connect_kwargs)
        except _DIAL_ERRORS as e:
            raise PeerUnreachable(f"dial failed: {e}") from e

        try:
            await ws.send(std_json.dumps(self._hello()))
            resp = std_json.loads(await ws.recv())
            remote_pk = decode_public_key(resp["pubkey"])
        except (WebSocketException, OSError, KeyError, TypeError, ValueError) as e:
            await ws.close()
            raise PeerUnreachable(f"handshake failed: {e}") from e

        remote_id = peer_id_from_public_key(remote_pk)
        if peer_id and remote_id != peer_id:
            await ws.close()
            raise PeerUnreachable(f"peer id mismatch: expected {peer_id}, got {remote_id}")

        addrs = _hello_addrs(resp)
        if addrs:
            self.peerstore.add_addrs(remote_id, addrs, TEMP_ADDR_TTL)
        print(f"[p2p] Connected to {remote_id} at {addr}")
        return WebSocketPeerHandle(ws, remote_id, addr, Cipher(self.key, remote_pk))

    # --------------------------------------------------------------------------
    # Endpoints
    # --------------------------------------------------------------------------
    async def _p2p_socket(self, ws: WebSocket):
        await ws.accept()
        # 1) handshake: client sends {"type":"hello","pubkey": b64, "addrs": [...]}
        try:
            hello = await ws.receive_json()
        except WebSocketDisconnect:
            return
        if not isinstance(hello, dict) or hello.get("type") != "hello" or "pubkey" not in hello:
            await ws.close(code=4000)
            return
        try:
            remote_pk = decode_public_key(hello["pubkey"])
        except (TypeError, ValueError):
            await ws.close(code=4000)
            return
        await ws.send_json(self._hello())

        cipher = Cipher(self.key, remote_pk)
        remote_id = peer_id_from_public_key(remote_pk)
        addrs = _hello_addrs(hello)
        if addrs:
            self.peerstore.add_addrs(remote_id, addrs, TEMP_ADDR_TTL)

        try:
            while True:
                msg = await ws.receive_json()
                if not isinstance(msg, dict) or msg.get("type") != "cipher":
                    continue
                try:
                    inner = cipher.open(msg)
                except (CryptoError, KeyError, TypeError, ValueError):
                    await ws.send_json(cipher.seal({"ok": False, "error": "malformed frame"}))
                    continue
                reply = await self.handle_request(remote_id, inner if isinstance(inner, dict) else {})
                await ws.send_json(cipher.seal(reply))
        except WebSocketDisconnect:
            pass
        except Exception:
            traceback.print_exc()
        finally:
            if WebSocketState.DISCONNECTED not in (ws.client_state, ws.application_state):
                await ws.close()

    async def _p2p_peers(self):
        return JSONResponse(
            {
                "id": self.id,
                "addrs": self.addrs,
                "peers": self.peerstore.peers(),
                "connected": self.connected_peers(),
            }
        )


__all__ = ["WebSocketHost", "WebSocketPeerHandle"]
