"""Two-variant reference to a remote profile: by handle or by numeric ID."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class ByHandle:
    handle: str

    def __post_init__(self) -> None:
        if not self.handle:
            raise ValueError("handle must be a non-empty string")

    def __str__(self) -> str:
        return f"@{self.handle}"


@dataclass(frozen=True)
class ByNumericID:
    user_id: int

    def __str__(self) -> str:
        return f"#{self.user_id}"


Identity = Union[ByHandle, ByNumericID]


def normalize_handle(handle: str) -> str:
    """Strip whitespace and a leading '@', and lower-case; handles are case-insensitive."""

    return handle.strip().lstrip("@").lower()


def parse_identity(value: str) -> Identity:
    """Interpret CLI/config text as an Identity.

    All-digit strings are numeric IDs; anything else is a handle (with an
    optional leading '@').
    """

    text = value.strip()
    if text.isdigit():
        return ByNumericID(int(text))
    return ByHandle(normalize_handle(text))


def identity_params(identity: Identity) -> dict:
    """Query parameters that select ``identity`` on the v1.1 user endpoints."""

    if isinstance(identity, ByHandle):
        return {"screen_name": identity.handle}
    if isinstance(identity, ByNumericID):
        return {"user_id": str(identity.user_id)}
    raise TypeError(f"identity must be ByHandle or ByNumericID, got {type(identity)!r}")
