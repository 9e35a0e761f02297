"""Rewrites source transactions into destination write sets.

A ``TranslationSession`` is created for exactly one transaction.  It memoizes
entity identities and destination ids so every fact that mentions the same
source entity, as subject or as reference value, lands on the same destination
entity.  The session is dropped once the write set is built.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Set

from ..errors import TranslationError
from ..model import (
    Assertion,
    AttributeMetadata,
    CheckpointUpdate,
    DestinationId,
    EntityIdentity,
    Fact,
    Operation,
    Retraction,
    TempId,
    Transaction,
    WriteSet,
)
from ..stores.base import DestinationView, SourceView
from .identity import IdentityResolver, default_identity

logger = logging.getLogger(__name__)


class TranslationSession:
    """Per-transaction mapping from source entity ids to destination ids."""

    def __init__(
        self,
        source_view: SourceView,
        dest_view: DestinationView,
        resolver: IdentityResolver = default_identity,
    ) -> None:
        self._source = source_view
        self._dest = dest_view
        self._resolver = resolver
        self._identities: Dict[int, EntityIdentity] = {}
        self._destination_ids: Dict[int, DestinationId] = {}
        self._attributes: Dict[int, AttributeMetadata] = {}
        self._checked_idents: Set[str] = set()
        self._next_tempid = -1

    def identity(self, eid: int) -> EntityIdentity:
        identity = self._identities.get(eid)
        if identity is None:
            identity = self._resolver(self._source, eid)
            self._identities[eid] = identity
        return identity

    def destination_id(self, eid: int) -> DestinationId:
        """Existing destination eid, or one provisional id per new entity."""

        dest_id = self._destination_ids.get(eid)
        if dest_id is not None:
            return dest_id
        found = self._dest.lookup(self.identity(eid))
        if found is not None:
            dest_id = found
        else:
            dest_id = TempId(self._source.partition(eid), self._next_tempid)
            self._next_tempid -= 1
        self._destination_ids[eid] = dest_id
        return dest_id

    def attribute(self, aid: int) -> AttributeMetadata:
        attr = self._attributes.get(aid)
        if attr is not None:
            return attr
        attr = self._source.attribute(aid)
        if attr is None:
            raise TranslationError(
                f"attribute {aid} has no metadata in the source at t={self._source.basis_t}"
            )
        self._require_destination_attribute(attr.ident)
        self._attributes[aid] = attr
        return attr

    def _require_destination_attribute(self, ident: str) -> None:
        if ident in self._checked_idents:
            return
        if self._dest.attribute(ident) is None:
            raise TranslationError(f"attribute {ident} is not installed in the destination")
        self._checked_idents.add(ident)

    def translate(self, fact: Fact) -> Operation:
        identity = self.identity(fact.e)
        self._require_destination_attribute(identity.attribute)
        attr = self.attribute(fact.a)
        value = fact.v
        if attr.is_ref:
            value = self.destination_id(int(value))  # type: ignore[arg-type]
        if fact.added:
            return Assertion(
                entity=self.destination_id(fact.e),
                attribute=attr.ident,
                value=value,
                identity=identity,
            )
        if isinstance(value, TempId):
            raise TranslationError(
                f"retraction of {attr.ident} on {identity} references entity "
                f"{fact.v} that does not exist in the destination"
            )
        return Retraction(identity=identity, attribute=attr.ident, value=value)


def translate_transaction(
    tx: Transaction,
    source_view: SourceView,
    dest_view: DestinationView,
    resolver: IdentityResolver = default_identity,
) -> WriteSet:
    """Build the write set for ``tx``; the checkpoint update is always last."""

    session = TranslationSession(source_view, dest_view, resolver)
    operations: List[Operation] = [session.translate(fact) for fact in tx.facts]
    operations.append(CheckpointUpdate(source_t=tx.t))
    logger.debug("translated t=%d into %d operations", tx.t, len(operations))
    return WriteSet(t=tx.t, instant=tx.instant, operations=tuple(operations))
