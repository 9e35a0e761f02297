"""Store contracts consumed by the replication pipeline.

The engine never talks to a concrete database; it only relies on these
protocols so the in-memory store used in tests and the PostgreSQL store used in
production are interchangeable.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from ..model import (
    AttributeMetadata,
    CommitResult,
    EntityIdentity,
    Operation,
    SchemaDef,
    Transaction,
)


class SourceView(Protocol):
    """Point-in-time view of the source database."""

    @property
    def basis_t(self) -> int: ...

    def entity(self, eid: int) -> Dict[str, object]: ...

    def ident(self, eid: int) -> Optional[str]: ...

    def attribute(self, aid: int) -> Optional[AttributeMetadata]: ...

    def partition(self, eid: int) -> str: ...


class SourceStore(Protocol):
    """Append-only transaction log plus as-of views."""

    def log_range(
        self, from_t: Optional[int], to_t: Optional[int] = None
    ) -> List[Transaction]: ...

    def as_of(self, t: int) -> SourceView: ...


class DestinationView(Protocol):
    """Current state of the destination database."""

    def lookup(self, identity: EntityIdentity) -> Optional[int]: ...

    def attribute(self, ident: str) -> Optional[AttributeMetadata]: ...

    def entity(self, eid: int) -> Dict[str, object]: ...


class DestinationStore(Protocol):
    """Atomic writer for replicated operations and schema bootstrap."""

    def view(self) -> DestinationView: ...

    def commit(
        self,
        operations: Sequence[Operation],
        tx_instant: Optional[datetime] = None,
    ) -> CommitResult: ...

    def create_if_absent(
        self,
        definitions: Sequence[SchemaDef],
        tx_instant: Optional[datetime] = None,
    ) -> int: ...
