"""A single versioned key/value server and the clerk that talks to it over RPC."""

from __future__ import annotations

import logging
import threading
from typing import NamedTuple

from labkv.labrpc import ClientEnd
from labkv.rpc import Err, GetArgs, GetReply, PutArgs, PutReply, Tversion

_log = logging.getLogger(__name__)

GET_METHOD = "KVServer.get"
PUT_METHOD = "KVServer.put"


class _ValueVersion(NamedTuple):
    value: str
    version: Tversion


class KVServer:
    """In-memory store where each put must name the key's current version."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, _ValueVersion] = {}

    def get(self, args: GetArgs) -> GetReply:
        """Return the value and version of ``args.key``, or ``ErrNoKey``."""
        with self._lock:
            entry = self._data.get(args.key)
        if entry is None:
            return GetReply(err=Err.NO_KEY)
        return GetReply(value=entry.value, version=entry.version, err=Err.OK)

    def put(self, args: PutArgs) -> PutReply:
        """Install the value if versions match.

        A missing key is created when ``args.version`` is 0 and reported as
        ``ErrNoKey`` otherwise; a version mismatch yields ``ErrVersion``.
        """
        with self._lock:
            entry = self._data.get(args.key)
            if entry is None:
                if args.version != 0:
                    return PutReply(err=Err.NO_KEY)
                self._data[args.key] = _ValueVersion(args.value, 1)
                return PutReply(err=Err.OK)
            if args.version != entry.version:
                return PutReply(err=Err.VERSION)
            self._data[args.key] = _ValueVersion(args.value, entry.version + 1)
            return PutReply(err=Err.OK)

    def kill(self) -> None:
        """Nothing to stop for a single in-memory server."""
        _log.debug("kvserver killed")


class Clerk:
    """Client of a :class:`KVServer`, retrying until it gets an answer."""

    def __init__(self, end: ClientEnd) -> None:
        self._end = end

    def get(self, key: str) -> tuple[str, Tversion, Err]:
        """Fetch ``(value, version, err)``; retries forever on lost RPCs."""
        args = GetArgs(key)
        while True:
            ok, reply = self._end.call(GET_METHOD, args)
            if not ok:
                continue
            if reply.err == Err.OK:
                return reply.value, reply.version, Err.OK
            if reply.err == Err.NO_KEY:
                return "", 0, Err.NO_KEY

    def put(self, key: str, value: str, version: Tversion) -> Err:
        """Conditionally write ``key``.

        ``ErrVersion`` on the first attempt means the put was not done; on a
        resend it may have been done by an earlier lost attempt, so
        ``ErrMaybe`` is returned instead.
        """
        args = PutArgs(key, value, version)
        first = True
        while True:
            ok, reply = self._end.call(PUT_METHOD, args)
            if ok:
                if reply.err == Err.OK:
                    return Err.OK
                if reply.err == Err.NO_KEY:
                    return Err.NO_KEY
                if reply.err == Err.VERSION:
                    return Err.VERSION if first else Err.MAYBE
            first = False