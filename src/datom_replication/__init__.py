"""Continuous replication between two datom databases."""

from .cdc.replicator import Replicator, ReplicatorOptions, ReplicatorState
from .stores.memory import InMemoryDatomStore


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = [
    "InMemoryDatomStore",
    "Replicator",
    "ReplicatorOptions",
    "ReplicatorState",
    "main",
]
