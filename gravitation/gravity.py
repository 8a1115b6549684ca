"""Profile/orbit data model and the capture routine behind Gravitation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple


DEFAULT_PROFILE: Tuple[str, ...] = ("test", "test2", "test3")

MatchPolicy = Callable[[Sequence[str], Sequence[str]], bool]


@dataclass
class Body:
    """A captured peer and the profile it presented when it was captured."""

    peer_id: str
    captured_profile: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, object]:
        return {"peer_id": self.peer_id, "profile": self.captured_profile}


@dataclass
class GravitationData:
    """Profile and orbit of a single node.

    The orbit is keyed by peer id so a peer can only be captured once;
    :attr:`orbit` gives the bodies back in capture order.
    """

    profile: Tuple[str, ...] = DEFAULT_PROFILE
    bodies: Dict[str, Body] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.profile = tuple(self.profile)

    @classmethod
    def from_orbit(cls, profile: Sequence[str], orbit: Iterable[Body] = ()) -> "GravitationData":
        return cls(profile=tuple(profile), bodies=_index_bodies(orbit))

    @property
    def orbit(self) -> List[Body]:
        return list(self.bodies.values())

    def orbit_ids(self) -> List[str]:
        return list(self.bodies)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self.bodies

    def __len__(self) -> int:
        return len(self.bodies)

    def add_body(self, body: Body) -> bool:
        """Insert *body* unless its peer is already in orbit."""

        if body.peer_id in self.bodies:
            return False
        self.bodies[body.peer_id] = body
        return True

    def restore(self, profile: Sequence[str], orbit: Iterable[Body]) -> None:
        """Replace the whole state in place. Only used when loading from disk."""

        self.profile = tuple(profile)
        self.bodies = _index_bodies(orbit)


def _index_bodies(orbit: Iterable[Body]) -> Dict[str, Body]:
    indexed: Dict[str, Body] = {}
    for body in orbit:
        indexed.setdefault(body.peer_id, body)
    return indexed


# ------------------------------------------------------------------------------
# Match policies
# ------------------------------------------------------------------------------
def exact_match(local: Sequence[str], remote: Sequence[str]) -> bool:
    """Same tags in the same order."""

    return list(local) == list(remote)


def shared_tags(minimum: int = 1) -> MatchPolicy:
    """Match when the profiles have at least *minimum* distinct tags in common."""

    if minimum < 1:
        raise ValueError("minimum must be at least 1")

    def _match(local: Sequence[str], remote: Sequence[str]) -> bool:
        return len(set(local) & set(remote)) >= minimum

    return _match


def jaccard(threshold: float = 0.5) -> MatchPolicy:
    """Match when |A ∩ B| / |A ∪ B| of the tag sets reaches *threshold*."""

    if not 0.0 < threshold <= 1.0:
        raise ValueError("threshold must be in (0, 1]")

    def _match(local: Sequence[str], remote: Sequence[str]) -> bool:
        a, b = set(local), set(remote)
        union = a | b
        if not union:
            return False
        return len(a & b) / len(union) >= threshold

    return _match


MATCH_POLICIES: Dict[str, Callable[[], MatchPolicy]] = {
    "exact": lambda: exact_match,
    "shared": shared_tags,
    "jaccard": jaccard,
}


def match_policy(name: str) -> MatchPolicy:
    """Return the default-configured policy registered under *name*."""

    try:
        factory = MATCH_POLICIES[name]
    except KeyError as exc:
        raise ValueError(f"Unknown match policy: {name}") from exc
    return factory()


# ------------------------------------------------------------------------------
# Capture
# ------------------------------------------------------------------------------
def capture(
    data: GravitationData,
    local_id: str,
    remote_id: str,
    remote_profile: Sequence[str],
    match: MatchPolicy = exact_match,
) -> bool:
    """Capture *remote_id* into *data*'s orbit if its profile matches.

    Returns ``True`` only when a new body was added. Calling again with the
    same peer never duplicates or removes a body.
    """

    if remote_id == local_id:
        return False
    if remote_id in data:
        return False
    if not match(data.profile, remote_profile):
        return False
    return data.add_body(Body(peer_id=remote_id, captured_profile=list(remote_profile)))


__all__ = [
    "DEFAULT_PROFILE",
    "MatchPolicy",
    "Body",
    "GravitationData",
    "exact_match",
    "shared_tags",
    "jaccard",
    "MATCH_POLICIES",
    "match_policy",
    "capture",
]
