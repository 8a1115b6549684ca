"""Live mode: join the rendezvous and try to capture every peer found there."""

from __future__ import annotations

import asyncio
import signal
from typing import Optional, Set

from nacl.public import PrivateKey

from .config import Config
from .errors import GravitationError
from .gravity import GravitationData, match_policy
from .node import Node
from .p2p.discovery import RendezvousService, RoutingDiscovery, bootstrap
from .p2p.host import Host, PeerInfo
from .p2p.websocket import WebSocketHost
from .storage import write_grav_data


def make_host(config: Config) -> WebSocketHost:
    return WebSocketHost(
        PrivateKey.generate(),
        config.listen_addresses,
        proxy_url=config.proxy,
        log_level=config.log_level,
    )


def save_on_exit(path: str, grav_data: GravitationData) -> None:
    """Persist *grav_data*; the process is exiting, so failures are only logged."""

    print(f"[storage] Saving data to file: {path}")
    try:
        write_grav_data(path, grav_data)
    except OSError as e:
        print(f"[storage] Failed to save gravitation data: {e}")


async def _gravitate(node: Node, info: PeerInfo) -> None:
    print(f"[rendezvous] Connecting to: {info.peer_id}")
    try:
        captured = await node.gravitation_peer_id(info.peer_id)
    except GravitationError as e:
        print(f"[rendezvous] Gravitation with {info.peer_id} failed: {e}")
        return
    if not captured:
        print(f"[rendezvous] {info.peer_id} stays out of orbit")


async def _discover(node: Node, discovery: RoutingDiscovery, ns: str, inflight: Set[asyncio.Task]) -> None:
    async for info in discovery.find_peers(ns):
        if info.peer_id == node.id:
            continue
        print(f"[rendezvous] Found peer: {info.peer_id}")
        # One task per peer so a slow peer never holds up the stream
        task = asyncio.create_task(_gravitate(node, info))
        inflight.add(task)
        task.add_done_callback(inflight.discard)


async def gravitation_rendezvous(
    config: Config,
    grav_data: GravitationData,
    host: Optional[Host] = None,
    stop: Optional[asyncio.Event] = None,
) -> Node:
    """Run a live node until *stop* is set (SIGINT/SIGTERM when not given)."""

    loop = asyncio.get_running_loop()
    handled_signals = []
    if stop is None:
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
            handled_signals.append(sig)

    host = host or make_host(config)
    node = Node(host, grav_data, match_policy(config.match))
    inflight: Set[asyncio.Task] = set()
    background = []
    try:
        await host.start()
        service = RendezvousService(host)

        print("[p2p] Bootstrapping")
        handles = await bootstrap(host, config.bootstrap_peers)
        discovery = RoutingDiscovery(host, service, handles, poll_interval=config.discovery_interval)

        print("[rendezvous] Announcing ourselves...")
        background.append(await discovery.advertise(config.rendezvous))
        print("[rendezvous] Successfully announced!")

        print("[rendezvous] Searching for other peers...")
        background.append(asyncio.create_task(_discover(node, discovery, config.rendezvous, inflight)))

        await stop.wait()
        print("[gravitation] ==> Stopping Gravitation Protocol")
    finally:
        pending = [*background, *inflight]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await host.close()
        for sig in handled_signals:
            loop.remove_signal_handler(sig)
        if config.save_file:
            save_on_exit(config.save_file, grav_data)
    return node


__all__ = ["make_host", "save_on_exit", "gravitation_rendezvous"]
