import queue
import threading

from labkv.kvraft import ClientPutResult, Clerk, KVServer, ValueVersion, make_title
from labkv.labrpc import Network, Server, Service
from labkv.rpc import Err, GetArgs, GetReply, PutArgs, PutReply
from labkv.rsm import ApplyMsg


class _FakeRaft:
    def __init__(self, q, leader=True):
        self.q = q
        self.leader = leader
        self.index = 0
        self.bytes = 0
        self.snapshots = []
        self.lock = threading.Lock()

    def start(self, op):
        if not self.leader:
            return -1, 0, False
        with self.lock:
            self.index += 1
            self.bytes += 10
            i = self.index
        self.q.put(ApplyMsg(command_valid=True, command=op, command_index=i))
        return i, 1, True

    def get_state(self):
        return 1, self.leader

    def persist_bytes(self):
        return self.bytes

    def snapshot(self, index, data):
        self.snapshots.append(index)
        self.bytes = 0


def _server(leader=True, maxraftstate=-1, snapshot=b""):
    q = queue.Queue()
    rf = _FakeRaft(q, leader)
    return KVServer(0, rf, q, maxraftstate, snapshot), rf


def _cluster(n, leader):
    net = Network()
    ends = []
    for i in range(n):
        kv, _ = _server(leader=(i == leader))
        srv = Server()
        srv.add_service(Service(kv))
        net.add_server(f"s{i}", srv)
        ends.append(net.make_end(f"c{i}"))
        net.connect(f"c{i}", f"s{i}")
        net.enable(f"c{i}", True)
    return net, Clerk(ends)


def test_do_op_put_get_semantics():
    kv, _ = _server()
    assert kv.do_op(PutArgs("k", "6.5840", 0, 1, 0)) == PutReply(Err.OK)
    assert kv.do_op(GetArgs("k")) == GetReply("6.5840", 1, Err.OK)
    assert kv.do_op(PutArgs("k", "6.5840", 0, 1, 1)) == PutReply(Err.VERSION)
    assert kv.do_op(PutArgs("y", "6.5840", 1, 1, 2)) == PutReply(Err.NO_KEY)
    assert kv.do_op(GetArgs("y")).err == Err.NO_KEY


def test_duplicate_put_returns_cached_reply():
    kv, _ = _server()
    args = PutArgs("k", "a", 0, 9, 5)
    assert kv.do_op(args) == PutReply(Err.OK)
    assert kv.do_op(args) == PutReply(Err.OK)
    assert kv.do_op(GetArgs("k")).version == 1


def test_get_and_put_through_rsm():
    kv, _ = _server()
    assert kv.put(PutArgs("a", "A", 0, 1, 0)) == PutReply(Err.OK)
    assert kv.get(GetArgs("a")) == GetReply("A", 1, Err.OK)


def test_not_leader_and_killed():
    kv, _ = _server(leader=False)
    assert kv.get(GetArgs("a")).err == Err.WRONG_LEADER
    assert kv.put(PutArgs("a", "A")).err == Err.WRONG_LEADER
    kv2, _ = _server()
    kv2.kill()
    assert kv2.killed()
    assert kv2.put(PutArgs("a", "A")).err == Err.WRONG_LEADER


def test_snapshot_round_trip():
    kv, _ = _server()
    kv.do_op(PutArgs("x", "1", 0, 3, 0))
    kv.do_op(PutArgs("x", "2", 1, 3, 1))
    data = kv.snapshot()
    kv2, _ = _server(snapshot=data)
    assert kv2.do_op(GetArgs("x")) == GetReply("2", 2, Err.OK)
    assert kv2.do_op(PutArgs("x", "2", 1, 3, 1)) == PutReply(Err.OK)
    assert kv2._put_results[3] == ClientPutResult(1, PutReply(Err.OK))
    assert kv2._data["x"] == ValueVersion("2", 2)


def test_restore_empty_and_garbage_reset():
    kv, _ = _server()
    kv.do_op(PutArgs("x", "1"))
    kv.restore(b"")
    assert kv.do_op(GetArgs("x")).err == Err.NO_KEY
    kv.do_op(PutArgs("x", "1"))
    kv.restore(b"garbage\n")
    assert kv.do_op(GetArgs("x")).err == Err.NO_KEY


def test_log_trimmed_with_snapshots():
    kv, rf = _server(maxraftstate=100)
    for i in range(50):
        assert kv.put(PutArgs("x", str(i), i, 1, i)).err == Err.OK
    assert rf.snapshots
    assert rf.bytes <= 8 * 100


def test_clerk_finds_leader():
    net, ck = _cluster(3, leader=2)
    try:
        assert ck.get("x") == ("", 0, Err.NO_KEY)
        for i in range(20):
            assert ck.put("k", str(i), i) == Err.OK
        assert ck.get("k") == ("19", 20, Err.OK)
        assert ck.put("k", "z", 0) == Err.VERSION
    finally:
        net.cleanup()


def test_clerk_version_mismatch_after_retry_is_maybe():
    net, ck = _cluster(3, leader=1)
    try:
        assert ck.put("k", "v", 5) == Err.NO_KEY
        ck._leader = 0
        assert ck.put("k", "v", 0) == Err.OK
        ck._leader = 0
        assert ck.put("k", "w", 0) == Err.MAYBE
    finally:
        net.cleanup()


def test_make_title():
    assert make_title("4B basic", 1, False, False, -1, False) == "Test: one client (4B basic)"
    assert (
        make_title("4C x", 15, True, True, 1000, True)
        == "Test: restarts, partitions, snapshots, random keys, many clients (4C x)"
    )