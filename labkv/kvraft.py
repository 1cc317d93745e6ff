"""A fault-tolerant versioned key/value service replicated through a log."""

from __future__ import annotations

import io
import logging
import queue
import random
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from labkv import labgob
from labkv.labgob import LabDecoder, LabEncoder
from labkv.labrpc import ClientEnd
from labkv.rpc import Err, GetArgs, GetReply, PutArgs, PutReply, Tversion
from labkv.rsm import RSM

_log = logging.getLogger(__name__)

GET_METHOD = "KVServer.get"
PUT_METHOD = "KVServer.put"


@dataclass(frozen=True)
class ValueVersion:
    value: str
    version: Tversion


@dataclass(frozen=True)
class ClientPutResult:
    """The last put a client had executed and its reply."""

    req_id: int
    result: PutReply


for _cls in (ValueVersion, ClientPutResult, PutArgs, GetArgs, PutReply, GetReply, Err):
    labgob.register(_cls)


class KVServer:
    """One replica of the key/value service."""

    def __init__(
        self,
        me: int,
        rf: Any,
        apply_queue: queue.Queue,
        maxraftstate: int = -1,
        snapshot: bytes = b"",
    ) -> None:
        self._me = me
        self._dead = threading.Event()
        self._lock = threading.RLock()
        self._data: dict[str, ValueVersion] = {}
        self._put_results: dict[int, ClientPutResult] = {}
        self._rsm = RSM(me, rf, apply_queue, self, maxraftstate, snapshot)

    def _record(self, args: PutArgs, reply: PutReply) -> PutReply:
        self._put_results[args.client_id] = ClientPutResult(args.req_id, reply)
        return reply

    def do_op(self, req: Any) -> Any:
        """Apply a committed Get or Put."""
        if isinstance(req, PutArgs):
            with self._lock:
                prev = self._put_results.get(req.client_id)
                if prev is not None and req.req_id <= prev.req_id:
                    self._put_results[req.client_id] = ClientPutResult(req.req_id, prev.result)
                    return prev.result
                entry = self._data.get(req.key)
                if entry is None:
                    if req.version == 0:
                        self._data[req.key] = ValueVersion(req.value, 1)
                        return self._record(req, PutReply(Err.OK))
                    return self._record(req, PutReply(Err.NO_KEY))
                if req.version != entry.version:
                    return self._record(req, PutReply(Err.VERSION))
                self._data[req.key] = ValueVersion(req.value, entry.version + 1)
                return self._record(req, PutReply(Err.OK))
        if isinstance(req, GetArgs):
            with self._lock:
                entry = self._data.get(req.key)
            if entry is None:
                return GetReply(err=Err.NO_KEY)
            return GetReply(entry.value, entry.version, Err.OK)
        raise TypeError(f"unsupported operation type: {type(req).__name__}")

    def snapshot(self) -> bytes:
        buf = io.BytesIO()
        with self._lock:
            encoder = LabEncoder(buf)
            encoder.encode(self._data)
            encoder.encode(self._put_results)
        return buf.getvalue()

    def restore(self, data: bytes) -> None:
        with self._lock:
            self._data = {}
            self._put_results = {}
            if not data:
                return
            decoder = LabDecoder(io.BytesIO(data))
            try:
                self._data = decoder.decode(dict)
            except (ValueError, EOFError, TypeError) as exc:
                _log.warning("KVServer[%d] restore decode error: %s", self._me, exc)
                return
            try:
                self._put_results = decoder.decode(dict)
            except (ValueError, EOFError, TypeError) as exc:
                _log.warning(
                    "KVServer[%d] restore decode error (ClientPutResults): %s", self._me, exc
                )

    def get(self, args: GetArgs) -> GetReply:
        _, result = self._rsm.submit(args)
        if result is None:
            return GetReply(err=Err.WRONG_LEADER)
        return result

    def put(self, args: PutArgs) -> PutReply:
        if self.killed():
            return PutReply(Err.WRONG_LEADER)
        _, is_leader = self._rsm.raft().get_state()
        if not is_leader:
            return PutReply(Err.WRONG_LEADER)
        _, result = self._rsm.submit(args)
        if result is None:
            return PutReply(Err.WRONG_LEADER)
        return result

    def kill(self) -> None:
        self._dead.set()

    def killed(self) -> bool:
        return self._dead.is_set()


class Clerk:
    """Client of the replicated service; finds the leader and retries forever."""

    def __init__(self, ends: Sequence[ClientEnd]) -> None:
        self._ends = list(ends)
        self._leader = 0
        self._clerk_id = random.getrandbits(63)
        self._req_id = 0

    def get(self, key: str) -> tuple[str, Tversion, Err]:
        idx = self._leader
        args = GetArgs(key)
        while True:
            ok, reply = self._ends[idx].call(GET_METHOD, args)
            if ok:
                if reply.err == Err.OK:
                    self._leader = idx
                    return reply.value, reply.version, reply.err
                if reply.err == Err.NO_KEY:
                    self._leader = idx
                    return "", 0, reply.err
            idx = (idx + 1) % len(self._ends)

    def put(self, key: str, value: str, version: Tversion) -> Err:
        """Conditional write; ``ErrMaybe`` when a resend hits a version mismatch."""
        idx = self._leader
        args = PutArgs(key, value, version, self._clerk_id, self._req_id)
        self._req_id += 1
        first = True
        while True:
            ok, reply = self._ends[idx].call(PUT_METHOD, args)
            if ok:
                if reply.err == Err.OK:
                    self._leader = idx
                    return Err.OK
                if reply.err == Err.NO_KEY:
                    self._leader = idx
                    return Err.NO_KEY
                if reply.err == Err.VERSION:
                    if first:
                        self._leader = idx
                        return Err.VERSION
                    return Err.MAYBE
            first = False
            idx = (idx + 1) % len(self._ends)


def make_title(
    part: str, nclients: int, crash: bool, partitions: bool, maxraftstate: int, randomkeys: bool
) -> str:
    """Title of a test run describing its conditions."""
    title = "Test: "
    if crash:
        title += "restarts, "
    if partitions:
        title += "partitions, "
    if maxraftstate != -1:
        title += "snapshots, "
    if randomkeys:
        title += "random keys, "
    title += "many clients" if nclients > 1 else "one client"
    return f"{title} ({part})"