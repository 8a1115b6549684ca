"""Entry point for the gravitation node."""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from .config import Config, parse_flags
from .errors import ConfigurationError
from .gravity import DEFAULT_PROFILE, GravitationData, match_policy
from .harness import run_fixture_file
from .rendezvous import gravitation_rendezvous
from .storage import read_grav_data


def initial_grav_data(config: Config) -> GravitationData:
    """Load state from ``config.load_file``, or start fresh with the configured profile."""

    grav_data = GravitationData(profile=tuple(config.profile or DEFAULT_PROFILE))
    if config.load_file:
        read_grav_data(config.load_file, grav_data)
    return grav_data


def main(argv: Optional[Sequence[str]] = None) -> int:
    # Configuration problems abort here, before any networking starts
    try:
        config = parse_flags(argv)
        grav_data = initial_grav_data(config)

        if config.test_file:
            result = asyncio.run(
                run_fixture_file(
                    config.test_file,
                    settle=config.settle,
                    transport=config.transport,
                    match=match_policy(config.match),
                    log_level=config.log_level,
                )
            )
            if result.passed:
                print("[test] Test successful!")
                return 0
            print(f"[test] Test failed. expected={result.expected} actual={result.actual}")
            return 1

        asyncio.run(gravitation_rendezvous(config, grav_data))
    except ConfigurationError as e:
        print(f"[config] {e}")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
