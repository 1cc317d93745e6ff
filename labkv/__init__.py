"""Simulated RPC network, versioned key/value services, a distributed lock and a replicated state machine layer."""

__version__ = "0.1.0"

__all__ = ["labgob", "labrpc", "rpc", "models", "kvtest", "kvsrv", "lock", "rsm", "kvraft"]