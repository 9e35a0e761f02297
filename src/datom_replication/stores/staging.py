"""Commit semantics shared by the datom store implementations.

A ``StagedWrite`` turns write operations into facts: it resolves tempids
(upserting through unique-identity attributes), rewrites lookup refs, applies
cardinality-one replacement and enforces uniqueness.  Subclasses supply the
storage primitives and decide how the emitted facts are made durable.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Set

from ..errors import CommitError
from ..model import (
    DB_IDENT,
    METADATA,
    SOURCE_T,
    Assertion,
    AttributeMetadata,
    Cardinality,
    CheckpointUpdate,
    EntityIdentity,
    Fact,
    Operation,
    Retraction,
    TempId,
    Uniqueness,
)


class StagedWrite:
    """Applies operations for transaction ``t`` on top of the primitives below."""

    def __init__(self, t: int) -> None:
        self.t = t
        self.facts: List[Fact] = []
        self.tempids: Dict[TempId, int] = {}
        self._entity_tempids: Set[TempId] = set()

    # -- primitives -----------------------------------------------------

    def attribute_by_ident(self, ident: str) -> Optional[AttributeMetadata]:
        raise NotImplementedError

    def values_of(self, e: int, aid: int) -> List[object]:
        raise NotImplementedError

    def unique_owner(self, aid: int, value: object) -> Optional[int]:
        raise NotImplementedError

    def allocate(self, partition: str) -> int:
        raise NotImplementedError

    def record(self, fact: Fact) -> None:
        raise NotImplementedError

    # -------------------------------------------------------------------

    def run(self, operations: Sequence[Operation]) -> None:
        self._entity_tempids = {
            op.entity
            for op in operations
            if isinstance(op, Assertion) and isinstance(op.entity, TempId)
        }
        self._upsert(operations)
        for op in operations:
            self.apply(op)

    def lookup(self, identity: EntityIdentity) -> Optional[int]:
        attr = self.attribute_by_ident(identity.attribute)
        if attr is None or attr.unique is None:
            return None
        if identity.attribute == DB_IDENT and isinstance(identity.value, str):
            schema_attr = self.attribute_by_ident(identity.value)
            if schema_attr is not None:
                return schema_attr.id
        return self.unique_owner(attr.id, identity.value)

    def _upsert(self, operations: Sequence[Operation]) -> None:
        for op in operations:
            if not isinstance(op, Assertion) or not isinstance(op.entity, TempId):
                continue
            if op.entity in self.tempids:
                continue
            pairs = [(op.attribute, op.value)]
            if op.identity is not None:
                pairs.insert(0, (op.identity.attribute, op.identity.value))
            for ident, value in pairs:
                attr = self.attribute_by_ident(ident)
                if attr is None or attr.unique is not Uniqueness.IDENTITY:
                    continue
                if isinstance(value, TempId):
                    continue
                existing = self.unique_owner(attr.id, value)
                if existing is not None:
                    self.tempids[op.entity] = existing
                    break

    def resolve_tempid(self, tempid: TempId) -> int:
        eid = self.tempids.get(tempid)
        if eid is None:
            eid = self.allocate(tempid.partition)
            self.tempids[tempid] = eid
        return eid

    def resolve_value(self, value: object) -> int:
        if isinstance(value, TempId):
            if value not in self._entity_tempids and value not in self.tempids:
                raise CommitError(
                    f"tempid {value} used only as a value", kind="dangling-tempid"
                )
            return self.resolve_tempid(value)
        if isinstance(value, EntityIdentity):
            eid = self.lookup(value)
            if eid is None:
                raise CommitError(
                    f"no entity for lookup ref {value}", kind="unknown-entity"
                )
            return eid
        if isinstance(value, bool) or not isinstance(value, int):
            raise CommitError(
                f"reference value {value!r} is not an entity id", kind="bad-value"
            )
        return value

    def apply(self, op: Operation) -> None:
        if isinstance(op, Assertion):
            if isinstance(op.entity, TempId):
                e = self.resolve_tempid(op.entity)
            else:
                e = op.entity
            if op.identity is not None:
                self.assert_value(e, op.identity.attribute, op.identity.value)
            self.assert_value(e, op.attribute, op.value)
        elif isinstance(op, Retraction):
            if isinstance(op.identity, EntityIdentity):
                e = self.lookup(op.identity)
                if e is None:
                    raise CommitError(
                        f"retraction target {op.identity} does not exist",
                        kind="unknown-entity",
                    )
            else:
                e = op.identity
            self.retract_value(e, op.attribute, op.value)
        elif isinstance(op, CheckpointUpdate):
            e = self.lookup(EntityIdentity(DB_IDENT, METADATA))
            if e is None:
                raise CommitError(
                    "replication metadata entity is missing", kind="missing-metadata"
                )
            self.assert_value(e, SOURCE_T, op.source_t)
        else:
            raise CommitError(f"unsupported operation {op!r}", kind="bad-operation")

    def _attribute(self, ident: str) -> AttributeMetadata:
        attr = self.attribute_by_ident(ident)
        if attr is None:
            raise CommitError(f"unknown attribute {ident}", kind="unknown-attribute")
        return attr

    def assert_value(self, e: int, ident: str, value: object) -> None:
        attr = self._attribute(ident)
        if attr.is_ref:
            value = self.resolve_value(value)
        current = self.values_of(e, attr.id)
        if value in current:
            return
        if attr.unique is not None:
            owner = self.unique_owner(attr.id, value)
            if owner is not None and owner != e:
                raise CommitError(
                    f"{ident} {value!r} already belongs to entity {owner}",
                    kind="unique-conflict",
                )
        if attr.cardinality is Cardinality.ONE:
            for old in list(current):
                self._emit(Fact(e, attr.id, old, self.t, False))
        self._emit(Fact(e, attr.id, value, self.t, True))

    def retract_value(self, e: int, ident: str, value: object) -> None:
        attr = self._attribute(ident)
        if attr.is_ref:
            value = self.resolve_value(value)
        if value in self.values_of(e, attr.id):
            self._emit(Fact(e, attr.id, value, self.t, False))

    def _emit(self, fact: Fact) -> None:
        self.record(fact)
        self.facts.append(fact)
