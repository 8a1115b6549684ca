"""Command-line and environment configuration for a gravitation node."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .errors import ConfigurationError
from .gravity import MATCH_POLICIES
from .harness import DEFAULT_SETTLE_SECONDS
from .p2p.discovery import DEFAULT_POLL_INTERVAL
from .p2p.host import parse_peer_addr, split_addr

DEFAULT_LISTEN = "ws://127.0.0.1:9000"
DEFAULT_RENDEZVOUS = "meet me here"

HELP = """
Creates a Gravitation protocol instance.

  gravitation
      joins the rendezvous and captures matching peers until interrupted
  gravitation -t testfile
      runs a gravitation topology test with the given fixture file
"""


def _env_list(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


@dataclass
class Config:
    listen_addresses: List[str] = field(default_factory=lambda: [DEFAULT_LISTEN])
    bootstrap_peers: List[str] = field(default_factory=list)
    rendezvous: str = DEFAULT_RENDEZVOUS
    profile: Optional[List[str]] = None
    load_file: Optional[str] = None
    save_file: Optional[str] = None
    test_file: Optional[str] = None
    match: str = "exact"
    proxy: Optional[str] = None
    transport: str = "memory"
    settle: float = DEFAULT_SETTLE_SECONDS
    discovery_interval: float = DEFAULT_POLL_INTERVAL
    log_level: str = "warning"

    def validate(self) -> "Config":
        if not self.listen_addresses:
            raise ConfigurationError("At least one listen address is required")
        for addr in self.listen_addresses:
            scheme, _, _ = split_addr(addr)
            if scheme != "ws":
                raise ConfigurationError(f"Listen addresses must use ws://, got {addr!r}")
        for addr in self.bootstrap_peers:
            parse_peer_addr(addr)
        if not self.rendezvous:
            raise ConfigurationError("Rendezvous string cannot be empty")
        if self.profile is not None and not self.profile:
            raise ConfigurationError("Profile needs at least one tag")
        if self.match not in MATCH_POLICIES:
            raise ConfigurationError(f"Unknown match policy: {self.match}")
        if self.settle < 0:
            raise ConfigurationError("Settle interval cannot be negative")
        if self.discovery_interval <= 0:
            raise ConfigurationError("Discovery interval must be positive")
        return self


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gravitation",
        description=HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--listen", action="append", help="Listen address, ws://host:port (repeatable). Env: GRAV_LISTEN")
    parser.add_argument("--peer", action="append", help="Bootstrap peer, ws://host:port[/p2p/<id>] (repeatable). Env: GRAV_PEERS")
    parser.add_argument("--rendezvous", default=os.getenv("GRAV_RENDEZVOUS", DEFAULT_RENDEZVOUS), help="Rendezvous key to advertise and search under.")
    parser.add_argument("--profile", nargs="+", metavar="TAG", help="Profile tags, in order. Env: GRAV_PROFILE")
    parser.add_argument("-l", "--load", dest="load_file", help="Load profile and orbit from this file.")
    parser.add_argument("-s", "--save", dest="save_file", help="Save profile and orbit to this file on exit.")
    parser.add_argument("-t", "--test", dest="test_file", help="Run a topology test with this fixture file.")
    parser.add_argument("--match", default=os.getenv("GRAV_MATCH", "exact"), choices=sorted(MATCH_POLICIES), help="Profile match policy.")
    parser.add_argument("--proxy", default=os.getenv("GRAV_PROXY"), help="SOCKS proxy for outbound connections, e.g. socks5://127.0.0.1:9050")
    parser.add_argument("--transport", default="memory", choices=["memory", "ws"], help="Transport used by topology tests.")
    parser.add_argument("--settle", type=float, default=DEFAULT_SETTLE_SECONDS, help="Seconds to wait before checking a topology test.")
    parser.add_argument("--discovery-interval", type=float, default=DEFAULT_POLL_INTERVAL, help="Seconds between rendezvous queries.")
    parser.add_argument("--log-level", default=os.getenv("GRAV_LOG_LEVEL", "warning"), help="uvicorn log level.")
    return parser


def parse_flags(argv: Optional[Sequence[str]] = None) -> Config:
    args = build_parser().parse_args(argv)
    config = Config(
        listen_addresses=args.listen or _env_list("GRAV_LISTEN") or [DEFAULT_LISTEN],
        bootstrap_peers=args.peer or _env_list("GRAV_PEERS"),
        rendezvous=args.rendezvous,
        profile=args.profile or _env_list("GRAV_PROFILE") or None,
        load_file=args.load_file,
        save_file=args.save_file,
        test_file=args.test_file,
        match=args.match,
        proxy=args.proxy,
        transport=args.transport,
        settle=args.settle,
        discovery_interval=args.discovery_interval,
        log_level=args.log_level,
    )
    return config.validate()


__all__ = ["DEFAULT_LISTEN", "DEFAULT_RENDEZVOUS", "Config", "build_parser", "parse_flags"]
