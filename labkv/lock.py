"""A distributed lock built on a versioned key/value clerk."""

from __future__ import annotations

import itertools
import threading
import time
from typing import Any

from labkv.rpc import Err, Tversion

_RETRY_DELAY = 0.01

_ids = itertools.count(1)
_ids_lock = threading.Lock()


def _next_id() -> str:
    with _ids_lock:
        return str(next(_ids))


class Lock:
    """A lock whose state is the value stored under ``name``.

    An empty value (or a missing key) means free; otherwise the value is the
    id of the holder.  Usable as a context manager.
    """

    def __init__(self, ck: Any, name: str) -> None:
        self._ck = ck
        self._name = name
        self._id = _next_id()
        self._held = False
        self._version: Tversion = 0

    @property
    def held(self) -> bool:
        return self._held

    def _take(self, version: Tversion) -> bool:
        err = self._ck.put(self._name, self._id, version)
        if err == Err.OK:
            self._held = True
            self._version = version + 1
            return True
        if err == Err.MAYBE:
            value, current, gerr = self._ck.get(self._name)
            if gerr == Err.OK and value == self._id:
                self._held = True
                self._version = current
                return True
        return False

    def acquire(self) -> None:
        """Block until the lock is held by this client."""
        while True:
            value, version, err = self._ck.get(self._name)
            if err == Err.NO_KEY:
                if self._take(0):
                    return
            elif err == Err.OK and value == "":
                if self._take(version):
                    return
            time.sleep(_RETRY_DELAY)

    def release(self) -> None:
        """Release the lock held by this client."""
        while True:
            err = self._ck.put(self._name, "", self._version)
            if err == Err.OK:
                self._held = False
                return
            if err == Err.MAYBE:
                value, _, gerr = self._ck.get(self._name)
                if gerr == Err.OK and value == "":
                    self._held = False
                    return
            time.sleep(_RETRY_DELAY)

    def __enter__(self) -> Lock:
        self.acquire()
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()