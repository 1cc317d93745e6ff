# labkv

`labkv` is a toolkit for building and testing fault-tolerant key/value
services. Everything runs in one process. It uses only the standard library.

## Modules

- `labkv.labrpc` is a simulated network. It has `Network`, `ClientEnd`,
  `Server` and `Service`. The network can be made unreliable so that it
  drops and delays messages. It can delay replies for a long time
  (`long_reordering`), disable end-points, and kill servers with
  `delete_server`. It counts RPCs (`get_count`, `get_total_count`) and bytes
  (`get_total_bytes`). A handler is a public method of the receiver that
  takes one argument and returns the reply. `ClientEnd.call(svc_meth, args)`
  returns `(True, reply)` or `(False, None)`.
- `labkv.labgob` has `LabEncoder` and `LabDecoder`, along with `register`,
  `register_name`, `check_value` and `error_count`. These encode values as
  tagged JSON lines, so an RPC always carries a copy. Dataclass fields whose
  names start with an underscore are not sent, and the encoder warns about
  them. The decoder warns when it is asked to decode into an object that
  already holds non-default values.
- `labkv.rpc` defines the request and reply types `PutArgs`, `PutReply`,
  `GetArgs` and `GetReply`, and the `Err` codes.
- `labkv.kvsrv` has a single in-memory versioned `KVServer` and a `Clerk`
  that reaches it through a `ClientEnd`. When a call gets no reply, the
  clerk retries.
- `labkv.lock` has `Lock`, a distributed lock built on any clerk that offers
  `get` and `put`. It can be used as a context manager.
- `labkv.rsm` has `RSM`, `StateMachine`, `Op` and `ApplyMsg`. `RSM` submits
  requests to a replicated log and applies the committed entries to a state
  machine. When the log grows beyond `maxraftstate`, it takes snapshots. The
  module also has `CounterServer`, a counter state machine, and its request
  types (`Inc`, `Null`, `Dec` and their replies).
- `labkv.kvraft` has a key/value `KVServer` replicated through `RSM`. It
  filters out duplicate puts by client id and request id, and it can take
  and restore snapshots. It also has a `Clerk` that tries each server in turn
  until one answers as the leader.
- `labkv.models` has the sequential key/value model: `KvInput`, `KvOutput`,
  `KvState`, `partition`, `init_state`, `step` and `describe_operation`. It
  also has `Operation` and `OpLog`, a thread-safe log of timed client calls.
  `OpLog.record_get` and `OpLog.record_put` wrap a clerk's calls.
- `labkv.kvtest` has test helpers: `rand_value` and `make_keys`, and the
  checks `check_put_concurrent` and `check_appends`. The checks raise
  `CheckError`.

## Install

```
pip install .
pip install ".[test]"   # with the test dependencies
```

## Example

```python
from labkv.kvsrv import KVServer, Clerk
from labkv.labrpc import Network, Server, Service
from labkv.lock import Lock
from labkv.rpc import Err

net = Network()
server = Server()
server.add_service(Service(KVServer()))   # service name "KVServer"
net.add_server("kv0", server)

end = net.make_end("client-0")
net.connect("client-0", "kv0")
net.enable("client-0", True)

ck = Clerk(end)
assert ck.put("k", "hello", 0) == Err.OK
value, version, err = ck.get("k")   # ("hello", 1, Err.OK)

with Lock(ck, "my-lock"):
    ...                              # critical section

net.cleanup()
```

## Semantics of `put`

- If the key is missing and the version is 0, the value is stored with
  version 1.
- If the key is missing and the version is not 0, the result is `ErrNoKey`.
- If the version does not match, the result is `ErrVersion`.
- A clerk may have to resend a put and then receive `ErrVersion`. In that
  case it returns `ErrMaybe`, because an earlier attempt may already have
  been applied.

## The log interface

`RSM` and `labkv.kvraft.KVServer` need a log object (`rf`) and a
`queue.Queue` on which the log delivers `ApplyMsg` values. Putting `None` on
that queue closes it.

The log object must provide these methods:

- `start(command) -> (index, term, is_leader)`
- `get_state() -> (term, is_leader)`
- `persist_bytes() -> int`
- `snapshot(index, data)`

## What is not included

- There is no consensus implementation. You supply the replicated log that
  `RSM` and `kvraft.KVServer` run on.
- There is no linearizability checker. `labkv.models` supplies the model
  (`partition`, `init_state`, `step`) and `OpLog` records histories. No
  search over those histories is included.
- There is no storage on disk and there are no command-line programs.
  Servers keep their state in memory, and snapshots are returned as bytes.

## Tests

```
pytest
```