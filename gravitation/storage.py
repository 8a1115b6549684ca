"""Reading and writing a node's gravitation state to disk."""

from __future__ import annotations

import json
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from .errors import StorageError
from .gravity import Body, GravitationData


STORAGE_VERSION = 1


class BodyRecord(BaseModel):
    peer_id: str = Field(validation_alias=AliasChoices("peer_id", "PeerID", "peerID"))
    profile: Optional[List[str]] = Field(
        default=None,
        validation_alias=AliasChoices("profile", "CapturedProfile", "capturedProfile", "Profile"),
    )


class GravFile(BaseModel):
    """On-disk layout. Older state files use capitalised keys."""

    storage_version: int = 1
    profile: List[str] = Field(validation_alias=AliasChoices("profile", "Profile"))
    orbit: List[BodyRecord] = Field(
        default_factory=list, validation_alias=AliasChoices("orbit", "Orbit")
    )

    @field_validator("orbit", mode="before")
    @classmethod
    def _null_orbit(cls, value):
        return [] if value is None else value


def write_grav_data(path: str, data: GravitationData) -> None:
    """Serialise *data* to *path* as indented JSON."""

    payload = {
        "storage_version": STORAGE_VERSION,
        "profile": list(data.profile),
        "orbit": [body.to_dict() for body in data.orbit],
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)


def read_grav_data(path: str, data: GravitationData) -> None:
    """Load *path* into the existing *data*, replacing its profile and orbit."""

    print(f"[storage] Loading gravitation data from {path}...")
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as exc:
        raise StorageError(f"State file not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise StorageError(f"Failed to read state file {path}: {exc}") from exc

    try:
        parsed = GravFile.model_validate(raw)
    except ValidationError as exc:
        raise StorageError(f"Malformed state file {path}: {exc}") from exc

    if parsed.storage_version > STORAGE_VERSION:
        raise StorageError(f"Unsupported storage_version {parsed.storage_version} in {path}")

    data.restore(
        parsed.profile,
        (Body(peer_id=record.peer_id, captured_profile=record.profile) for record in parsed.orbit),
    )


__all__ = ["STORAGE_VERSION", "write_grav_data", "read_grav_data"]
