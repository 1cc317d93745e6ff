"""An in-process RPC layer over a simulated, possibly unreliable network.

A :class:`Network` holds client end-points, servers and the connections
between them.  It can drop requests and replies, delay messages, disconnect
end-points and kill servers.  Arguments and replies are always encoded and
decoded with :mod:`labkv.labgob`, so a handler never sees the caller's
objects and the caller never sees the handler's.

Typical use::

    net = Network()
    end = net.make_end("client-1")
    server = Server()
    server.add_service(Service(receiver))
    net.add_server("server-1", server)
    net.connect("client-1", "server-1")
    net.enable("client-1", True)
    ok, reply = end.call("Receiver.Method", args)

A handler is a public method of the receiver that takes one argument and
returns the reply.  ``call`` returns ``(True, reply)`` when the server
executed the request and the reply arrived, and ``(False, None)`` when the
request or reply was lost or the server is gone.
"""

from __future__ import annotations

import io
import queue
import random
import threading
import time
import types
from typing import Any, Hashable

from labkv.labgob import LabDecoder, LabEncoder

SHORT_DELAY = 27  # ms
LONG_DELAY = 7000  # ms
MAX_DELAY = LONG_DELAY + 100

_POLL_INTERVAL = 0.1  # seconds between checks for a killed server

_CO_VARARGS = 0x04


def _encode(value: Any) -> bytes:
    buf = io.BytesIO()
    LabEncoder(buf).encode(value)
    return buf.getvalue()


def _decode(data: bytes) -> Any:
    return LabDecoder(io.BytesIO(data)).decode()


def _takes_one_argument(function: types.FunctionType) -> bool:
    """Whether a plain method, called on an instance, accepts exactly one argument."""
    code = function.__code__
    positional = code.co_argcount - 1  # the receiver itself
    defaults = len(function.__defaults__ or ())
    required = max(positional - defaults, 0)
    has_varargs = bool(code.co_flags & _CO_VARARGS)
    kwonly_defaults = function.__kwdefaults__ or {}
    kwonly = code.co_varnames[code.co_argcount:code.co_argcount + code.co_kwonlyargcount]
    if any(name not in kwonly_defaults for name in kwonly):
        return False
    return required <= 1 and (positional >= 1 or has_varargs)


class Service:
    """An object whose public one-argument methods can be called over RPC."""

    def __init__(self, receiver: Any, name: str | None = None) -> None:
        self.name = name or type(receiver).__name__
        cls = type(receiver)
        self._methods = {}
        for method_name in dir(cls):
            if method_name.startswith("_"):
                continue
            attribute = getattr(cls, method_name)
            if isinstance(attribute, types.FunctionType) and _takes_one_argument(attribute):
                self._methods[method_name] = getattr(receiver, method_name)

    def _dispatch(self, method_name: str, svc_meth: str, payload: bytes) -> bytes:
        method = self._methods.get(method_name)
        if method is None:
            raise LookupError(
                f"labrpc: unknown method {method_name} in {svc_meth}; "
                f"expecting one of {sorted(self._methods)}"
            )
        return _encode(method(_decode(payload)))


class Server:
    """A collection of services sharing one RPC end-point."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, Service] = {}
        self._count = 0

    def add_service(self, service: Service) -> None:
        with self._lock:
            self._services[service.name] = service

    def get_count(self) -> int:
        """Number of RPCs this server has received."""
        with self._lock:
            return self._count

    def _dispatch(self, svc_meth: str, payload: bytes) -> bytes:
        with self._lock:
            self._count += 1
            service_name, _, method_name = svc_meth.rpartition(".")
            service = self._services.get(service_name)
            choices = sorted(self._services)
        if service is None:
            raise LookupError(
                f"labrpc: unknown service {service_name} in {svc_meth}; "
                f"expecting one of {choices}"
            )
        return service._dispatch(method_name, svc_meth, payload)


class ClientEnd:
    """A client's end-point for talking to one server."""

    def __init__(self, endname: Hashable, network: Network) -> None:
        self.endname = endname
        self._network = network

    def call(self, svc_meth: str, args: Any) -> tuple[bool, Any]:
        """Send an RPC and wait for the reply.

        ``svc_meth`` names the service and method, e.g. ``"Raft.AppendEntries"``.
        Returns ``(True, reply)`` or ``(False, None)`` if no reply arrived.
        Errors raised on the server side (an unknown service or method, or
        an exception from the handler) are raised here.
        """
        payload = _encode(args)
        ok, data = self._network._deliver(self.endname, svc_meth, payload)
        if not ok:
            return False, None
        return True, _decode(data)


class Network:
    """A simulated network of client end-points and servers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reliable = True
        self._long_delays = False
        self._long_reordering = False
        self._ends: dict[Hashable, ClientEnd] = {}
        self._enabled: dict[Hashable, bool] = {}
        self._servers: dict[Hashable, Server | None] = {}
        self._connections: dict[Hashable, Hashable | None] = {}
        self._done = threading.Event()
        self._stats_lock = threading.Lock()
        self._count = 0
        self._bytes = 0

    def cleanup(self) -> None:
        """Shut the network down; later calls fail at once."""
        self._done.set()

    def reliable(self, yes: bool) -> None:
        """Make the network reliable, or let it drop and delay messages."""
        with self._lock:
            self._reliable = yes

    def is_reliable(self) -> bool:
        with self._lock:
            return self._reliable

    def long_reordering(self, yes: bool) -> None:
        """Sometimes delay replies for a long time."""
        with self._lock:
            self._long_reordering = yes

    def long_delays(self, yes: bool) -> None:
        """Pause a long time before failing a send on a disabled connection."""
        with self._lock:
            self._long_delays = yes

    def is_long_delays(self) -> bool:
        with self._lock:
            return self._long_delays

    def make_end(self, endname: Hashable) -> ClientEnd:
        """Create a client end-point, initially disabled and unconnected."""
        with self._lock:
            if endname in self._ends:
                raise ValueError(f"labrpc: end {endname!r} already exists")
            end = ClientEnd(endname, self)
            self._ends[endname] = end
            self._enabled[endname] = False
            self._connections[endname] = None
            return end

    def delete_end(self, endname: Hashable) -> None:
        with self._lock:
            if endname not in self._ends:
                raise KeyError(f"labrpc: end {endname!r} doesn't exist")
            del self._ends[endname]
            self._enabled.pop(endname, None)
            self._connections.pop(endname, None)

    def add_server(self, servername: Hashable, server: Server) -> None:
        with self._lock:
            self._servers[servername] = server

    def delete_server(self, servername: Hashable) -> None:
        """Kill a server: calls to it, even those in progress, fail."""
        with self._lock:
            self._servers[servername] = None

    def connect(self, endname: Hashable, servername: Hashable) -> None:
        """Connect a client end-point to a server."""
        with self._lock:
            self._connections[endname] = servername

    def enable(self, endname: Hashable, enabled: bool) -> None:
        """Enable or disable a client end-point."""
        with self._lock:
            self._enabled[endname] = enabled

    def get_count(self, servername: Hashable) -> int:
        """Number of RPCs a server has received."""
        with self._lock:
            server = self._servers.get(servername)
        if server is None:
            raise KeyError(f"labrpc: no server {servername!r}")
        return server.get_count()

    def get_total_count(self) -> int:
        """Number of RPCs sent over the network."""
        with self._stats_lock:
            return self._count

    def get_total_bytes(self) -> int:
        """Bytes of arguments and delivered replies sent over the network."""
        with self._stats_lock:
            return self._bytes

    def _add_bytes(self, n: int) -> None:
        with self._stats_lock:
            self._bytes += n

    def _endname_info(
        self, endname: Hashable
    ) -> tuple[bool, Hashable | None, Server | None, bool, bool]:
        with self._lock:
            enabled = self._enabled.get(endname, False)
            servername = self._connections.get(endname)
            server = self._servers.get(servername) if servername is not None else None
            return enabled, servername, server, self._reliable, self._long_reordering

    def _is_server_dead(self, endname: Hashable, servername: Hashable, server: Server) -> bool:
        with self._lock:
            return not self._enabled.get(endname, False) or self._servers.get(servername) is not server

    def _deliver(self, endname: Hashable, svc_meth: str, payload: bytes) -> tuple[bool, bytes | None]:
        if self._done.is_set():
            return False, None
        with self._stats_lock:
            self._count += 1
            self._bytes += len(payload)

        enabled, servername, server, reliable, long_reordering = self._endname_info(endname)

        if not (enabled and servername is not None and server is not None):
            # Simulate no reply and an eventual timeout.
            if self.is_long_delays():
                ms = random.randrange(LONG_DELAY)
            else:
                ms = random.randrange(100)
            self._done.wait(ms / 1000)
            return False, None

        if not reliable:
            time.sleep(random.randrange(SHORT_DELAY) / 1000)
            if random.randrange(1000) < 100:
                return False, None

        # Run the handler in its own thread so that a killed server can be
        # noticed while the handler is still running.
        results: queue.SimpleQueue = queue.SimpleQueue()

        def run() -> None:
            try:
                results.put(server._dispatch(svc_meth, payload))
            except Exception as exc:  # re-raised in the caller
                results.put(exc)

        threading.Thread(target=run, daemon=True).start()

        reply: Any = None
        got_reply = False
        server_dead = False
        while not got_reply and not server_dead:
            try:
                reply = results.get(timeout=_POLL_INTERVAL)
                got_reply = True
            except queue.Empty:
                server_dead = self._is_server_dead(endname, servername, server)

        if got_reply and isinstance(reply, Exception):
            raise reply

        # A killed server must not answer, even if its handler finished.
        server_dead = self._is_server_dead(endname, servername, server)
        if not got_reply or server_dead:
            return False, None
        if not reliable and random.randrange(1000) < 100:
            return False, None
        if long_reordering and random.randrange(900) < 600:
            ms = 200 + random.randrange(1 + random.randrange(2000))
            time.sleep(ms / 1000)
        self._add_bytes(len(reply))
        return True, reply