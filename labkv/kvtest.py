"""Helpers and consistency checks for exercising versioned key/value clerks."""

from __future__ import annotations

import random
import string
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

ELECTION_TIMEOUT = 1.0
"""Seconds a replicated service is allowed to take to elect a leader."""

_LETTERS = string.ascii_lowercase + string.ascii_uppercase


class CheckError(Exception):
    """Raised when what clients observed is inconsistent with the server's state."""


@dataclass(frozen=True)
class ClntRes:
    """Count of puts a client saw succeed (``nok``) or possibly succeed (``nmaybe``)."""

    nok: int = 0
    nmaybe: int = 0

    def __add__(self, other: ClntRes) -> ClntRes:
        if not isinstance(other, ClntRes):
            return NotImplemented
        return ClntRes(self.nok + other.nok, self.nmaybe + other.nmaybe)


@dataclass(frozen=True)
class EntryV:
    """A value written by client ``id`` when it believed the version was ``v``."""

    id: int
    v: int


@dataclass(frozen=True)
class EntryN:
    """The ``n``-th append of client ``id``."""

    id: int
    n: int


def rand_value(n: int) -> str:
    """A random string of ``n`` ASCII letters."""
    return "".join(random.choice(_LETTERS) for _ in range(n))


def make_keys(n: int) -> list[str]:
    """Keys ``k0`` … ``k{n-1}``."""
    return [f"k{i}" for i in range(n)]


def check_put_concurrent(version: int, results: Iterable[ClntRes], reliable: bool) -> ClntRes:
    """Check a key's server version against the puts clients reported.

    On a reliable network every put is acknowledged, so the version must equal
    the number of successful puts; otherwise it may not exceed the number of
    puts that succeeded or may have succeeded.  Returns the summed counts.
    """
    total = sum(results, ClntRes())
    if not reliable and version > total.nok + total.nmaybe:
        raise CheckError(f"Wrong number of puts: server {version} clnts {total}")
    if reliable and version != total.nok:
        raise CheckError(f"Wrong number of puts: server {version} clnts {total}")
    return total


def check_appends(
    entries: Sequence[EntryN], nclnt: int, results: Sequence[ClntRes], version: int
) -> dict[int, int]:
    """Check the list of appends stored under one key.

    Each client's entries must appear with increasing ``n``; gaps are allowed
    only for puts the client reported as maybe-performed.  Returns, for each
    client, how many of its appends are missing.
    """
    expect = {i: 0 for i in range(nclnt)}
    skipped = {i: 0 for i in range(nclnt)}
    for entry in entries:
        expected = expect.get(entry.id, 0)
        if expected > entry.n:
            raise CheckError(f"{entry.id}: wrong expecting {expected} but got {entry.n}")
        if expected == entry.n:
            expect[entry.id] = expected + 1
        else:
            skipped[entry.id] = skipped.get(entry.id, 0) + entry.n - expected
            expect[entry.id] = entry.n + 1
    if len(entries) + 1 != version:
        raise CheckError(f"{len(entries)} appends in val != puts on server {version}")
    for client, n in expect.items():
        res = results[client]
        if skipped.get(client, 0) > res.nmaybe:
            raise CheckError(
                f"{client}: skipped puts {skipped[client]} on server > {res.nmaybe} maybe"
            )
        if n > res.nok + res.nmaybe:
            raise CheckError(
                f"{client}: {n} puts on server > ok+maybe {res.nok + res.nmaybe}"
            )
    return skipped