"""In-memory datom store implementing both the source and destination contracts.

The store keeps the full fact history.  Views replay that history up to a basis
``t``; commits stage their changes onto a private copy of the current state and
only publish it once every operation has been applied, so a rejected commit
leaves no trace.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import CommitError, SourceReadError
from ..model import (
    DB_IDENT,
    PART_DB,
    PART_TX,
    PART_USER,
    AttributeDef,
    AttributeMetadata,
    Cardinality,
    CommitResult,
    EntityDef,
    EntityIdentity,
    Fact,
    Operation,
    PartitionDef,
    SchemaDef,
    Transaction,
    Uniqueness,
    ValueType,
    make_eid,
    partition_index,
)
from .staging import StagedWrite

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Snapshot:
    """Entity state obtained by replaying facts."""

    def __init__(self, attributes: Dict[int, AttributeMetadata]) -> None:
        self._attributes = attributes
        self.values: Dict[int, Dict[int, List[object]]] = {}
        self.unique: Dict[Tuple[int, object], int] = {}

    def copy(self) -> "_Snapshot":
        clone = _Snapshot(self._attributes)
        clone.values = {
            e: {a: list(vs) for a, vs in attrs.items()}
            for e, attrs in self.values.items()
        }
        clone.unique = dict(self.unique)
        return clone

    def values_of(self, e: int, a: int) -> List[object]:
        return self.values.get(e, {}).get(a, [])

    def apply(self, fact: Fact) -> None:
        attr = self._attributes.get(fact.a)
        indexed = attr is not None and attr.unique is not None
        attrs = self.values.setdefault(fact.e, {})
        current = attrs.setdefault(fact.a, [])
        if fact.added:
            if fact.v not in current:
                current.append(fact.v)
            if indexed:
                self.unique[(fact.a, fact.v)] = fact.e
            return
        if fact.v in current:
            current.remove(fact.v)
        if not current:
            del attrs[fact.a]
        if not attrs:
            del self.values[fact.e]
        if indexed and self.unique.get((fact.a, fact.v)) == fact.e:
            del self.unique[(fact.a, fact.v)]


class _MemoryView:
    """Read-only view at a basis ``t``; serves as source and destination view."""

    def __init__(
        self, store: "InMemoryDatomStore", basis_t: int, snapshot: _Snapshot
    ) -> None:
        self._store = store
        self._basis_t = basis_t
        self._snapshot = snapshot

    @property
    def basis_t(self) -> int:
        return self._basis_t

    def entity(self, eid: int) -> Dict[str, object]:
        result: Dict[str, object] = {}
        for aid, values in self._snapshot.values.get(eid, {}).items():
            attr = self._store._attribute_at(aid, self._basis_t)
            if attr is None or not values:
                continue
            if attr.cardinality is Cardinality.MANY:
                result[attr.ident] = list(values)
            else:
                result[attr.ident] = values[-1]
        return result

    def ident(self, eid: int) -> Optional[str]:
        schema_ident = self._store._schema_ident_of(eid, self._basis_t)
        if schema_ident is not None:
            return schema_ident
        ident_attr = self._store._attribute_ids[DB_IDENT]
        values = self._snapshot.values_of(eid, ident_attr)
        return str(values[-1]) if values else None

    def attribute(self, key) -> Optional[AttributeMetadata]:
        if isinstance(key, str):
            aid = self._store._attribute_ids.get(key)
            if aid is None:
                return None
            key = aid
        return self._store._attribute_at(key, self._basis_t)

    def partition(self, eid: int) -> str:
        name = self._store._partition_names.get(partition_index(eid))
        if name is None:
            raise SourceReadError(f"entity {eid} belongs to no known partition")
        return name

    def lookup(self, identity: EntityIdentity) -> Optional[int]:
        return self._store._lookup(self._snapshot, identity, self._basis_t)


class _Stage(StagedWrite):
    """Pending changes of one commit, applied to a private snapshot copy."""

    def __init__(self, store: "InMemoryDatomStore", t: int) -> None:
        super().__init__(t)
        self._store = store
        self.snapshot = store._snapshot.copy()
        self.next_entity = dict(store._next_entity)

    def attribute_by_ident(self, ident: str) -> Optional[AttributeMetadata]:
        return self._store._attribute_by_ident(ident)

    def values_of(self, e: int, aid: int) -> List[object]:
        return self.snapshot.values_of(e, aid)

    def unique_owner(self, aid: int, value: object) -> Optional[int]:
        return self.snapshot.unique.get((aid, value))

    def allocate(self, partition: str) -> int:
        entry = self._store._partitions.get(partition)
        if entry is None:
            raise CommitError(
                f"unknown partition {partition}", kind="unknown-partition"
            )
        index = entry[0]
        n = self.next_entity.get(index, 1)
        self.next_entity[index] = n + 1
        return make_eid(index, n)

    def record(self, fact: Fact) -> None:
        self.snapshot.apply(fact)


class InMemoryDatomStore:
    """Volatile datom database with a transaction log and as-of views."""

    def __init__(
        self,
        *,
        first_t: int = 1,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._lock = RLock()
        self._clock = clock
        self._t = first_t - 1
        self._partitions: Dict[str, Tuple[int, int]] = {}
        self._partition_names: Dict[int, str] = {}
        self._next_entity: Dict[int, int] = {}
        self._attributes: Dict[int, AttributeMetadata] = {}
        self._attribute_installed: Dict[int, int] = {}
        self._attribute_ids: Dict[str, int] = {}
        self._transactions: List[Transaction] = []
        self._snapshot = _Snapshot(self._attributes)
        for index, ident in enumerate((PART_DB, PART_TX, PART_USER)):
            self._partitions[ident] = (index, self._t)
            self._partition_names[index] = ident
        self._next_entity[0] = 100
        ident_attr = AttributeMetadata(
            id=make_eid(0, 10),
            ident=DB_IDENT,
            value_type=ValueType.KEYWORD,
            unique=Uniqueness.IDENTITY,
        )
        self._install_attribute(ident_attr, self._t)

    # ------------------------------------------------------------------
    # Source contract

    @property
    def basis_t(self) -> int:
        with self._lock:
            return self._t

    def log_range(
        self, from_t: Optional[int], to_t: Optional[int] = None
    ) -> List[Transaction]:
        with self._lock:
            return [
                tx
                for tx in self._transactions
                if (from_t is None or tx.t >= from_t) and (to_t is None or tx.t < to_t)
            ]

    def as_of(self, t: int) -> _MemoryView:
        with self._lock:
            snapshot = _Snapshot(self._attributes)
            for tx in self._transactions:
                if tx.t > t:
                    break
                for fact in tx.facts:
                    snapshot.apply(fact)
            return _MemoryView(self, t, snapshot)

    # ------------------------------------------------------------------
    # Destination contract

    def view(self) -> _MemoryView:
        with self._lock:
            return _MemoryView(self, self._t, self._snapshot)

    def commit(
        self,
        operations: Sequence[Operation],
        tx_instant: Optional[datetime] = None,
    ) -> CommitResult:
        with self._lock:
            t = self._t + 1
            stage = _Stage(self, t)
            stage.run(operations)
            self._publish(stage, tx_instant)
            logger.debug("committed t=%d with %d facts", t, len(stage.facts))
            return CommitResult(t=t, tempids=dict(stage.tempids))

    def create_if_absent(
        self,
        definitions: Sequence[SchemaDef],
        tx_instant: Optional[datetime] = None,
    ) -> int:
        with self._lock:
            t = self._t + 1
            stage = _Stage(self, t)
            new_partitions: List[str] = []
            new_attributes: List[AttributeMetadata] = []
            created = 0
            try:
                for definition in definitions:
                    if isinstance(definition, PartitionDef):
                        if definition.ident in self._partitions:
                            continue
                        index = max(self._partition_names) + 1
                        self._partitions[definition.ident] = (index, t)
                        self._partition_names[index] = definition.ident
                        new_partitions.append(definition.ident)
                    elif isinstance(definition, AttributeDef):
                        existing = self._attribute_by_ident(definition.ident)
                        if existing is not None:
                            if existing.value_type is not definition.value_type:
                                logger.warning(
                                    "attribute %s already installed as %s; keeping it",
                                    definition.ident,
                                    existing.value_type.value,
                                )
                            continue
                        attr = AttributeMetadata(
                            id=stage.allocate(PART_DB),
                            ident=definition.ident,
                            value_type=definition.value_type,
                            cardinality=definition.cardinality,
                            unique=definition.unique,
                        )
                        self._install_attribute(attr, t)
                        new_attributes.append(attr)
                    elif isinstance(definition, EntityDef):
                        lookup = EntityIdentity(DB_IDENT, definition.ident)
                        if self._lookup(stage.snapshot, lookup, t) is not None:
                            continue
                        eid = stage.allocate(definition.partition)
                        stage.assert_value(eid, DB_IDENT, definition.ident)
                    else:
                        raise CommitError(
                            f"unsupported schema definition {definition!r}",
                            kind="bad-operation",
                        )
                    created += 1
            except CommitError:
                self._rollback_schema(new_partitions, new_attributes)
                raise
            if created == 0:
                return 0
            self._publish(stage, tx_instant)
            logger.info("installed %d schema definitions at t=%d", created, t)
            return created

    # ------------------------------------------------------------------
    # Internals

    def _publish(self, stage: _Stage, tx_instant: Optional[datetime]) -> None:
        instant = tx_instant or self._clock()
        self._snapshot = stage.snapshot
        self._next_entity = stage.next_entity
        self._t = stage.t
        self._transactions.append(
            Transaction(t=stage.t, instant=instant, facts=tuple(stage.facts))
        )

    def _install_attribute(self, attr: AttributeMetadata, t: int) -> None:
        self._attributes[attr.id] = attr
        self._attribute_installed[attr.id] = t
        self._attribute_ids[attr.ident] = attr.id

    def _rollback_schema(
        self, partitions: List[str], attributes: List[AttributeMetadata]
    ) -> None:
        for ident in partitions:
            index, _ = self._partitions.pop(ident)
            self._partition_names.pop(index, None)
        for attr in attributes:
            self._attributes.pop(attr.id, None)
            self._attribute_installed.pop(attr.id, None)
            self._attribute_ids.pop(attr.ident, None)

    def _attribute_by_ident(self, ident: str) -> Optional[AttributeMetadata]:
        aid = self._attribute_ids.get(ident)
        return None if aid is None else self._attributes.get(aid)

    def _attribute_at(self, aid: int, basis_t: int) -> Optional[AttributeMetadata]:
        installed = self._attribute_installed.get(aid)
        if installed is None or installed > basis_t:
            return None
        return self._attributes[aid]

    def _schema_ident_of(self, eid: int, basis_t: int) -> Optional[str]:
        attr = self._attribute_at(eid, basis_t)
        if attr is not None:
            return attr.ident
        return None

    def _lookup(
        self, snapshot: _Snapshot, identity: EntityIdentity, basis_t: int
    ) -> Optional[int]:
        attr = self._attribute_by_ident(identity.attribute)
        if attr is None or attr.unique is None:
            return None
        if self._attribute_installed[attr.id] > basis_t:
            return None
        if identity.attribute == DB_IDENT:
            aid = self._attribute_ids.get(str(identity.value))
            if aid is not None and self._attribute_at(aid, basis_t) is not None:
                return aid
        return snapshot.unique.get((attr.id, identity.value))


__all__ = ["InMemoryDatomStore"]
