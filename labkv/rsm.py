"""A replicated state machine driven by a Raft-like log.

The log object (``rf``) must provide ``start(command) -> (index, term,
is_leader)``, ``get_state() -> (term, is_leader)``, ``persist_bytes() -> int``
and ``snapshot(index, data)``.  It delivers committed entries as
:class:`ApplyMsg` values on ``apply_queue``.  Putting ``None`` on that queue
closes it.
"""

from __future__ import annotations

import io
import itertools
import queue
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from labkv import labgob
from labkv.labgob import LabDecoder, LabEncoder
from labkv.rpc import Err

SUBMIT_TIMEOUT = 2.0
"""Seconds ``submit`` waits for its command to be applied."""


@dataclass(frozen=True)
class Op:
    """A command as it travels through the log."""

    id: int
    me: int
    req: Any


@dataclass(frozen=True)
class ApplyMsg:
    """A committed log entry or an installed snapshot."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0
    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0


class StateMachine(Protocol):
    """What a replicated service implements."""

    def do_op(self, req: Any) -> Any: ...

    def snapshot(self) -> bytes: ...

    def restore(self, data: bytes) -> None: ...


class RSM:
    """Submits requests to the log and applies committed ones to a state machine."""

    def __init__(
        self,
        me: int,
        rf: Any,
        apply_queue: queue.Queue,
        sm: StateMachine,
        maxraftstate: int = -1,
        snapshot: bytes = b"",
        timeout: float = SUBMIT_TIMEOUT,
    ) -> None:
        self._me = me
        self._rf = rf
        self._apply = apply_queue
        self._sm = sm
        self._maxraftstate = maxraftstate
        self._timeout = timeout
        self._lock = threading.Lock()
        self._waiters: dict[int, queue.SimpleQueue] = {}
        self._closed = False
        self._ids = itertools.count(1)
        if snapshot:
            sm.restore(snapshot)
        threading.Thread(target=self._applier, daemon=True).start()

    def raft(self) -> Any:
        return self._rf

    def _applier(self) -> None:
        while True:
            msg = self._apply.get()
            if msg is None:
                break
            if msg.command_valid:
                op = msg.command
                with self._lock:
                    waiter = self._waiters.get(msg.command_index)
                result = self._sm.do_op(op.req)
                if waiter is not None:
                    waiter.put(result if op.me == self._me else None)
            elif msg.snapshot_valid:
                with self._lock:
                    self._sm.restore(msg.snapshot)
            if self._maxraftstate != -1 and self._rf.persist_bytes() > self._maxraftstate:
                self._rf.snapshot(msg.command_index, self._sm.snapshot())
        with self._lock:
            self._closed = True
            for waiter in self._waiters.values():
                waiter.put(None)
            self._waiters.clear()

    def submit(self, req: Any) -> tuple[Err, Any]:
        """Run ``req`` through the log; ``(Err.OK, result)`` or ``(ErrWrongLeader, None)``."""
        op = Op(next(self._ids), self._me, req)
        with self._lock:
            if self._closed:
                return Err.WRONG_LEADER, None
            index, _, is_leader = self._rf.start(op)
            if not is_leader:
                return Err.WRONG_LEADER, None
            waiter: queue.SimpleQueue = queue.SimpleQueue()
            self._waiters[index] = waiter
        try:
            result = waiter.get(timeout=self._timeout)
        except queue.Empty:
            return Err.WRONG_LEADER, None
        finally:
            with self._lock:
                if self._waiters.get(index) is waiter:
                    del self._waiters[index]
        if result is None:
            return Err.WRONG_LEADER, None
        return Err.OK, result


@dataclass(frozen=True)
class Inc:
    """Increment the counter."""


@dataclass(frozen=True)
class IncRep:
    n: int


@dataclass(frozen=True)
class Null:
    """Do nothing."""


@dataclass(frozen=True)
class NullRep:
    pass


@dataclass(frozen=True)
class Dec:
    """A request the counter refuses to execute."""


for _cls in (Op, Inc, IncRep, Null, NullRep, Dec):
    labgob.register(_cls)


class CounterServer:
    """A state machine holding a single counter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counter = 0

    def do_op(self, req: Any) -> Any:
        if isinstance(req, Inc):
            with self._lock:
                self.counter += 1
                return IncRep(self.counter)
        if isinstance(req, Null):
            return NullRep()
        raise TypeError(f"do_op executes only Inc and Null, not {type(req).__name__}")

    def snapshot(self) -> bytes:
        buf = io.BytesIO()
        with self._lock:
            LabEncoder(buf).encode(self.counter)
        return buf.getvalue()

    def restore(self, data: bytes) -> None:
        try:
            value = LabDecoder(io.BytesIO(data)).decode(int)
        except (ValueError, EOFError, TypeError) as exc:
            raise ValueError("couldn't decode counter") from exc
        with self._lock:
            self.counter = value