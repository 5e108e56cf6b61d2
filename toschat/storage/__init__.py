"""
Local store factory.

Usage:
    from toschat.storage import make_store
    store = make_store("sqlite", db_path="./data/queue.db")

Adding a new store:
    1. Implement KeyValueStore in toschat/storage/<name>.py.
    2. Add an entry to _REGISTRY below.
    3. Set  queue.storage: <name>  in config.yaml.
"""

from .local_store import KeyValueStore, MemoryStore, SQLiteKVStore

_REGISTRY: dict[str, type[KeyValueStore]] = {
    "memory": MemoryStore,
    "sqlite": SQLiteKVStore,
}


def make_store(store_type: str, **kwargs) -> KeyValueStore:
    """
    Instantiate a local store by name.

    Raises:
        ValueError: If the store type is not registered.
    """
    cls = _REGISTRY.get(store_type)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown local store: '{store_type}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


__all__ = ["KeyValueStore", "MemoryStore", "SQLiteKVStore", "make_store"]
