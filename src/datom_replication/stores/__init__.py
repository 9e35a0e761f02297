"""Datom store contracts and implementations."""

from .base import DestinationStore, DestinationView, SourceStore, SourceView
from .memory import InMemoryDatomStore

__all__ = [
    "DestinationStore",
    "DestinationView",
    "InMemoryDatomStore",
    "SourceStore",
    "SourceView",
]
