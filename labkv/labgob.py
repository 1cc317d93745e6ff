"""A value encoder for RPC messages and snapshots.

Values are written one per line as tagged JSON, so what crosses the
simulated network is always a copy and never a reference to a live object.
The encoder warns about dataclass fields whose names start with an
underscore (they are not transmitted), and the decoder warns when it is
asked to decode into an object that already holds non-default values.
"""

from __future__ import annotations

import base64
import dataclasses
import json
import logging
import threading
from enum import Enum
from typing import Any, BinaryIO

_log = logging.getLogger(__name__)


class _Registry:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.errors = 0
        self.checked: set[type] = set()
        self.by_name: dict[str, type] = {}
        self.by_type: dict[type, str] = {}


_registry = _Registry()


def error_count() -> int:
    """Number of warnings raised so far by the checks in this module."""
    with _registry.lock:
        return _registry.errors


def _default_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


def _is_named(cls: type) -> bool:
    return dataclasses.is_dataclass(cls) or issubclass(cls, Enum)


def _bind(name: str, cls: type) -> None:
    # Caller holds the registry lock.
    existing = _registry.by_name.get(name)
    if existing is not None and existing is not cls:
        raise ValueError(f"labgob: name {name!r} already registered for {existing!r}")
    bound = _registry.by_type.get(cls)
    if bound is not None and bound != name:
        raise ValueError(f"labgob: {cls!r} already registered as {bound!r}")
    _registry.by_name[name] = cls
    _registry.by_type[cls] = name


def _wire_name(cls: type) -> str:
    with _registry.lock:
        name = _registry.by_type.get(cls)
        if name is None:
            name = _default_name(cls)
            _bind(name, cls)
        return name


def _lookup(name: str) -> type:
    with _registry.lock:
        cls = _registry.by_name.get(name)
    if cls is None:
        raise ValueError(f"labgob: type {name!r} is not registered")
    return cls


def register(value: Any) -> None:
    """Register the type of ``value`` (or ``value`` itself if it is a class)."""
    check_value(value)
    cls = value if isinstance(value, type) else type(value)
    if _is_named(cls):
        with _registry.lock:
            _bind(_default_name(cls), cls)


def register_name(name: str, value: Any) -> None:
    """Register the type of ``value`` under an explicit wire name."""
    check_value(value)
    cls = value if isinstance(value, type) else type(value)
    if not _is_named(cls):
        raise TypeError(f"labgob: cannot name {cls!r}; only dataclasses and enums carry names")
    with _registry.lock:
        _bind(name, cls)


def _check_fields(cls: type) -> None:
    with _registry.lock:
        if cls in _registry.checked:
            return
        _registry.checked.add(cls)
    for f in dataclasses.fields(cls):
        if f.name.startswith("_"):
            _log.warning(
                "labgob error: private field %s of %s in RPC or persist/snapshot "
                "will not be transmitted",
                f.name,
                cls.__name__,
            )
            with _registry.lock:
                _registry.errors += 1


def check_value(value: Any) -> None:
    """Warn once per dataclass type about fields that will not be transmitted."""
    if isinstance(value, type):
        if dataclasses.is_dataclass(value):
            _check_fields(value)
        return
    if dataclasses.is_dataclass(value):
        _check_fields(type(value))
        for f in dataclasses.fields(value):
            check_value(getattr(value, f.name))
    elif isinstance(value, (list, tuple)):
        for item in value:
            check_value(item)
    elif isinstance(value, dict):
        for key, item in value.items():
            check_value(key)
            check_value(item)


def _zero_of(value: Any) -> Any:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return 0
    if isinstance(value, float):
        return 0.0
    if isinstance(value, str):
        return ""
    return None


def _check_default(value: Any, depth: int, name: str) -> None:
    if depth > 3 or value is None:
        return
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        for f in dataclasses.fields(value):
            child = f"{name}.{f.name}" if name else f.name
            _check_default(getattr(value, f.name), depth + 1, child)
        return
    if isinstance(value, (bool, int, float, str)) and value != _zero_of(value):
        with _registry.lock:
            if _registry.errors < 1:
                _log.warning(
                    "labgob warning: Decoding into a non-default variable/field %s may not work",
                    name or type(value).__name__,
                )
            _registry.errors += 1


def _to_wire(value: Any) -> Any:
    if isinstance(value, Enum):
        return {"@enum": _wire_name(type(value)), "value": _to_wire(value.value)}
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {"@bytes": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, list):
        return [_to_wire(item) for item in value]
    if isinstance(value, tuple):
        return {"@tuple": [_to_wire(item) for item in value]}
    if isinstance(value, dict):
        return {"@dict": [[_to_wire(k), _to_wire(v)] for k, v in value.items()]}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        fields = {
            f.name: _to_wire(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if not f.name.startswith("_")
        }
        return {"@type": _wire_name(type(value)), "fields": fields}
    raise TypeError(f"labgob: cannot encode value of type {type(value).__name__}")


def _build(cls: type, fields: dict[str, Any]) -> Any:
    obj = object.__new__(cls)
    for f in dataclasses.fields(cls):
        if f.name in fields:
            item = _from_wire(fields[f.name])
        elif f.default is not dataclasses.MISSING:
            item = f.default
        elif f.default_factory is not dataclasses.MISSING:
            item = f.default_factory()
        else:
            item = None
        object.__setattr__(obj, f.name, item)
    return obj


def _from_wire(data: Any) -> Any:
    if isinstance(data, list):
        return [_from_wire(item) for item in data]
    if not isinstance(data, dict):
        return data
    if "@bytes" in data:
        return base64.b64decode(data["@bytes"])
    if "@tuple" in data:
        return tuple(_from_wire(item) for item in data["@tuple"])
    if "@dict" in data:
        return {_from_wire(k): _from_wire(v) for k, v in data["@dict"]}
    if "@enum" in data:
        return _lookup(data["@enum"])(_from_wire(data["value"]))
    if "@type" in data:
        return _build(_lookup(data["@type"]), data["fields"])
    raise ValueError(f"labgob: malformed value {data!r}")


class LabEncoder:
    """Writes values, one per line, to a binary stream."""

    def __init__(self, writer: BinaryIO) -> None:
        self._writer = writer

    def encode(self, value: Any) -> None:
        check_value(value)
        wire = _to_wire(value)
        self._writer.write(json.dumps(wire, separators=(",", ":")).encode("utf-8") + b"\n")


class LabDecoder:
    """Reads values written by :class:`LabEncoder`."""

    def __init__(self, reader: BinaryIO) -> None:
        self._reader = reader

    def decode(self, into: Any = None) -> Any:
        """Read the next value.

        ``into`` may be ``None`` (return the value as is), a type (the value
        must be an instance of it), or a dataclass instance whose fields are
        overwritten with those of the decoded value.
        """
        if into is not None:
            check_value(into)
            if not isinstance(into, type):
                _check_default(into, 2, "")
        line = self._reader.readline()
        if not line:
            raise EOFError("labgob: no more values")
        value = _from_wire(json.loads(line))
        if into is None:
            return value
        if isinstance(into, type):
            if not isinstance(value, into):
                raise TypeError(
                    f"labgob: decoded {type(value).__name__}, expected {into.__name__}"
                )
            return value
        if dataclasses.is_dataclass(into):
            if type(value) is not type(into):
                raise TypeError(
                    f"labgob: decoded {type(value).__name__}, expected {type(into).__name__}"
                )
            for f in dataclasses.fields(into):
                object.__setattr__(into, f.name, getattr(value, f.name))
            return into
        raise TypeError(f"labgob: cannot decode into {type(into).__name__}")