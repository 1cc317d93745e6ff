"""Argument, reply and error types shared by the key/value clerks and servers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

Tversion = int
"""Version number of a key; a key that was never written has version 0."""


class Err(str, Enum):
    """Outcome of a Get or Put as reported by a server or a clerk."""

    OK = "OK"
    NO_KEY = "ErrNoKey"
    VERSION = "ErrVersion"
    # Reported by clerks only.
    MAYBE = "ErrMaybe"
    # Used by the replicated service.
    WRONG_LEADER = "ErrWrongLeader"
    WRONG_GROUP = "ErrWrongGroup"
    OUTDATED_REQUEST = "ErrOutdatedRequest"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PutArgs:
    """A conditional write: succeeds only if ``version`` matches the server's."""

    key: str
    value: str
    version: Tversion = 0
    client_id: int = 0
    req_id: int = 0


@dataclass
class PutReply:
    """Reply to a Put; ``err`` stays ``None`` until a server fills it in."""

    err: Err | None = None


@dataclass(frozen=True)
class GetArgs:
    """A read of one key."""

    key: str


@dataclass
class GetReply:
    """Reply to a Get."""

    value: str = ""
    version: Tversion = 0
    err: Err | None = None