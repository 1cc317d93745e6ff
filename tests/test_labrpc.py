import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import pytest

from labkv.labrpc import Network, Server, Service


@dataclass
class JunkArgs:
    x: int = 0


@dataclass
class JunkReply:
    x: str = ""


class JunkServer:
    def __init__(self):
        self.mu = threading.Lock()
        self.log1 = []
        self.log2 = []
        self.seen = []
        self.release = threading.Event()

    def handler1(self, args):
        with self.mu:
            self.log1.append(args)
            try:
                return int(args)
            except ValueError:
                return 0

    def handler2(self, args):
        with self.mu:
            self.log2.append(args)
            return f"handler2-{args}"

    def handler3(self, args):
        self.release.wait(20)
        return -args

    def handler4(self, args):
        self.seen.append(args)
        return JunkReply("pointer")

    def handler5(self, args):
        args.x = 12345
        return JunkReply("no pointer")

    def handler6(self, args):
        with self.mu:
            return len(args)

    def handler7(self, args):
        with self.mu:
            return "y" * args

    def broken(self, args):
        raise RuntimeError("handler failed")

    def two_args(self, a, b):
        return a + b


@pytest.fixture
def net():
    network = Network()
    yield network
    network.cleanup()


def setup_server(net, servername="server99"):
    js = JunkServer()
    rs = Server()
    rs.add_service(Service(js))
    net.add_server(servername, rs)
    return js, rs


def connected_end(net, endname="end1-99", servername="server99"):
    e = net.make_end(endname)
    net.connect(endname, servername)
    net.enable(endname, True)
    return e


def test_basic(net):
    setup_server(net)
    e = connected_end(net)
    assert e.call("JunkServer.handler2", 111) == (True, "handler2-111")
    assert e.call("JunkServer.handler1", "9099") == (True, 9099)


def test_types(net):
    js, _ = setup_server(net)
    e = connected_end(net)
    args = JunkArgs(7)
    ok, reply = e.call("JunkServer.handler4", args)
    assert ok
    assert reply.x == "pointer"
    assert js.seen == [JunkArgs(7)]
    assert js.seen[0] is not args

    args = JunkArgs()
    ok, reply = e.call("JunkServer.handler5", args)
    assert ok
    assert reply.x == "no pointer"
    # the handler changed its own copy only
    assert args.x == 0


def test_disconnect(net):
    setup_server(net)
    e = net.make_end("end1-99")
    net.connect("end1-99", "server99")
    assert e.call("JunkServer.handler2", 111) == (False, None)
    net.enable("end1-99", True)
    assert e.call("JunkServer.handler1", "9099") == (True, 9099)


def test_counts(net):
    setup_server(net, 99)
    e = connected_end(net, servername=99)
    for i in range(17):
        ok, reply = e.call("JunkServer.handler2", i)
        assert ok
        assert reply == f"handler2-{i}"
    assert net.get_count(99) == 17
    assert net.get_total_count() == 17


def test_bytes(net):
    setup_server(net, 99)
    e = connected_end(net, servername=99)
    for _ in range(17):
        args = "x" * 72
        args = args + args
        args = args + args
        ok, reply = e.call("JunkServer.handler6", args)
        assert ok
        assert reply == len(args)
    n = net.get_total_bytes()
    assert 4828 <= n <= 6000

    for _ in range(17):
        ok, reply = e.call("JunkServer.handler7", 107)
        assert ok
        assert len(reply) == 107
    nn = net.get_total_bytes() - n
    assert 1800 <= nn <= 2500


def test_concurrent_many(net):
    setup_server(net, 1000)
    nclients, nrpcs = 20, 10

    def client(i):
        e = net.make_end(i)
        net.connect(i, 1000)
        net.enable(i, True)
        n = 0
        for j in range(nrpcs):
            arg = i * 100 + j
            ok, reply = e.call("JunkServer.handler2", arg)
            assert reply == f"handler2-{arg}"
            n += 1
        return n

    with ThreadPoolExecutor(max_workers=nclients) as pool:
        total = sum(pool.map(client, range(nclients)))
    assert total == nclients * nrpcs
    assert net.get_count(1000) == total


def test_unreliable(net):
    net.reliable(False)
    assert net.is_reliable() is False
    setup_server(net, 1000)
    nclients = 100

    def client(i):
        e = net.make_end(i)
        net.connect(i, 1000)
        net.enable(i, True)
        arg = i * 100
        ok, reply = e.call("JunkServer.handler2", arg)
        if ok:
            assert reply == f"handler2-{arg}"
            return 1
        return 0

    with ThreadPoolExecutor(max_workers=nclients) as pool:
        total = sum(pool.map(client, range(nclients)))
    assert 0 < total < nclients


def test_concurrent_one(net):
    js, _ = setup_server(net, 1000)
    e = connected_end(net, "c", 1000)
    nrpcs = 20

    def one(i):
        arg = 100 + i
        ok, reply = e.call("JunkServer.handler2", arg)
        assert reply == f"handler2-{arg}"
        return 1

    with ThreadPoolExecutor(max_workers=nrpcs) as pool:
        total = sum(pool.map(one, range(nrpcs)))
    assert total == nrpcs
    assert len(js.log2) == nrpcs
    assert net.get_count(1000) == total


def test_regression1(net):
    js, _ = setup_server(net, 1000)
    e = net.make_end("c")
    net.connect("c", 1000)
    net.enable("c", False)
    nrpcs = 20

    def disabled_call(i):
        return e.call("JunkServer.handler2", 100 + i)

    with ThreadPoolExecutor(max_workers=nrpcs) as pool:
        futures = [pool.submit(disabled_call, i) for i in range(nrpcs)]
        time.sleep(0.1)
        t0 = time.monotonic()
        net.enable("c", True)
        ok, reply = e.call("JunkServer.handler2", 99)
        dur = time.monotonic() - t0
        assert reply == "handler2-99"
        results = [f.result() for f in futures]

    assert dur < 0.1
    assert js.log2 == [99]
    assert net.get_count(1000) == 1
    assert all(r == (False, None) for r in results)


def test_killed(net):
    js, _ = setup_server(net)
    e = connected_end(net)
    pool = ThreadPoolExecutor(max_workers=1)
    future = pool.submit(e.call, "JunkServer.handler3", 99)

    time.sleep(0.3)
    still_running = not future.done()
    net.delete_server("server99")
    result = future.result(timeout=0.5)
    js.release.set()
    pool.shutdown()

    assert still_running
    assert result == (False, None)


def test_benchmark(net):
    setup_server(net)
    e = connected_end(net)
    replies = {e.call("JunkServer.handler2", 111)[1] for _ in range(500)}
    assert replies == {"handler2-111"}


def test_long_delay_race(net):
    setup_server(net)
    e = connected_end(net)
    assert e.call("JunkServer.handler1", "9099") == (True, 9099)
    net.long_delays(True)
    assert net.is_long_delays() is True
    net.delete_server("server99")

    outcome = []
    done = threading.Event()

    def caller():
        outcome.append(e.call("JunkServer.handler1", "9099"))
        done.set()

    threading.Thread(target=caller, daemon=True).start()
    net.long_delays(True)
    done.wait(0.2)
    net.cleanup()
    assert done.wait(1.0)
    assert outcome == [(False, None)]


def test_unknown_service_raises(net):
    setup_server(net)
    e = connected_end(net)
    with pytest.raises(LookupError):
        e.call("Nope.handler2", 1)


def test_unknown_method_raises(net):
    setup_server(net)
    e = connected_end(net)
    with pytest.raises(LookupError):
        e.call("JunkServer.missing", 1)


def test_method_with_wrong_arity_is_not_a_handler(net):
    setup_server(net)
    e = connected_end(net)
    with pytest.raises(LookupError):
        e.call("JunkServer.two_args", 1)


def test_handler_error_propagates(net):
    setup_server(net)
    e = connected_end(net)
    with pytest.raises(RuntimeError, match="handler failed"):
        e.call("JunkServer.broken", 1)


def test_service_name_override(net):
    rs = Server()
    rs.add_service(Service(JunkServer(), name="Junk"))
    net.add_server("s", rs)
    e = connected_end(net, "e", "s")
    assert e.call("Junk.handler2", 5) == (True, "handler2-5")


def test_duplicate_end_raises(net):
    net.make_end("a")
    with pytest.raises(ValueError):
        net.make_end("a")


def test_delete_end(net):
    net.make_end("a")
    net.delete_end("a")
    with pytest.raises(KeyError):
        net.delete_end("a")
    end = net.make_end("a")
    assert end.endname == "a"


def test_call_after_cleanup_fails(net):
    setup_server(net)
    e = connected_end(net)
    net.cleanup()
    assert e.call("JunkServer.handler2", 1) == (False, None)
    assert net.get_total_count() == 0


def test_get_count_of_deleted_server_raises(net):
    setup_server(net)
    net.delete_server("server99")
    with pytest.raises(KeyError):
        net.get_count("server99")


def test_server_get_count(net):
    _, rs = setup_server(net)
    e = connected_end(net)
    e.call("JunkServer.handler2", 1)
    e.call("JunkServer.handler2", 2)
    assert rs.get_count() == 2