# Fleetwatch/src/state/__init__.py
"""Storage adapters for Fleetwatch. Each store has a Redis and an in-memory backend."""
from .alert_store import AlertStore, InMemoryAlertStore, RedisAlertStore
from .counters import CounterStore, InMemoryCounterStore, RedisCounterStore
from .identity_store import IdentityStore, InMemoryIdentityStore, RedisIdentityStore
from .redis_client import RedisClient
from .sample_store import InMemorySampleStore, RedisSampleStore, SampleStore

__all__ = [
    "AlertStore",
    "CounterStore",
    "IdentityStore",
    "InMemoryAlertStore",
    "InMemoryCounterStore",
    "InMemoryIdentityStore",
    "InMemorySampleStore",
    "RedisAlertStore",
    "RedisClient",
    "RedisCounterStore",
    "RedisIdentityStore",
    "RedisSampleStore",
    "SampleStore",
]
