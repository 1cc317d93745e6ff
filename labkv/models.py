"""Sequential model of a versioned key/value store and a log of client operations."""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, ClassVar

_INVALID = "<invalid>"


@dataclass(frozen=True)
class KvInput:
    """What a client asked for: a get (``op == GET``) or a conditional put."""

    GET: ClassVar[int] = 0
    PUT: ClassVar[int] = 1

    op: int
    key: str
    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class KvOutput:
    """What the client got back."""

    value: str = ""
    version: int = 0
    err: str = ""


@dataclass(frozen=True)
class KvState:
    """State of a single key."""

    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class Operation:
    """One completed client call with its invocation and return times (ns)."""

    client_id: int
    input: KvInput
    output: KvOutput
    call: int
    ret: int


def partition(history: list[Operation]) -> list[list[Operation]]:
    """Split a history by key, ordered by key, keeping each key's order."""
    by_key: dict[str, list[Operation]] = defaultdict(list)
    for op in history:
        by_key[op.input.key].append(op)
    return [by_key[key] for key in sorted(by_key)]


def init_state() -> KvState:
    """State of a key that was never written."""
    return KvState("", 0)


def step(state: KvState, kv_input: KvInput, kv_output: KvOutput) -> tuple[bool, Any]:
    """Apply one operation; return whether its output is legal and the next state."""
    if kv_input.op == KvInput.GET:
        return kv_output.value == state.value, state
    if kv_input.op == KvInput.PUT:
        if state.version == kv_input.version:
            legal = kv_output.err in ("OK", "ErrMaybe")
            return legal, KvState(kv_input.value, state.version + 1)
        return kv_output.err in ("ErrVersion", "ErrMaybe"), state
    return False, _INVALID


def describe_operation(kv_input: KvInput, kv_output: KvOutput) -> str:
    """One-line human-readable description of an operation."""
    if kv_input.op == KvInput.GET:
        return (
            f"get('{kv_input.key}') -> "
            f"('{kv_output.value}', '{kv_output.version}', '{kv_output.err}')"
        )
    if kv_input.op == KvInput.PUT:
        return (
            f"put('{kv_input.key}', '{kv_input.value}', '{kv_input.version}') -> "
            f"('{kv_output.err}')"
        )
    return _INVALID


class OpLog:
    """Thread-safe record of client operations."""

    def __init__(self) -> None:
        self._ops: list[Operation] = []
        self._lock = threading.Lock()

    def append(self, op: Operation) -> None:
        with self._lock:
            self._ops.append(op)

    def read(self) -> list[Operation]:
        """A copy of the operations recorded so far."""
        with self._lock:
            return list(self._ops)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ops)

    def record_get(self, ck: Any, key: str, client_id: int) -> tuple[str, int, Any]:
        """Call ``ck.get(key)``, log the call and return its result."""
        start = time.monotonic_ns()
        value, version, err = ck.get(key)
        end = time.monotonic_ns()
        self.append(
            Operation(
                client_id,
                KvInput(KvInput.GET, key),
                KvOutput(value, version, str(err)),
                start,
                end,
            )
        )
        return value, version, err

    def record_put(self, ck: Any, key: str, value: str, version: int, client_id: int) -> Any:
        """Call ``ck.put(key, value, version)``, log the call and return its result."""
        start = time.monotonic_ns()
        err = ck.put(key, value, version)
        end = time.monotonic_ns()
        self.append(
            Operation(
                client_id,
                KvInput(KvInput.PUT, key, value, version),
                KvOutput(err=str(err)),
                start,
                end,
            )
        )
        return err