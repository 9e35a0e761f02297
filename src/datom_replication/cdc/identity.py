"""Database-independent identities for source entities."""

from __future__ import annotations

from typing import Callable

from ..model import DB_IDENT, SOURCE_EID, EntityIdentity
from ..stores.base import SourceView

IdentityResolver = Callable[[SourceView, int], EntityIdentity]


def default_identity(view: SourceView, eid: int) -> EntityIdentity:
    """Name an entity by its ident when it has one, else by its source eid."""

    ident = view.ident(eid)
    if ident is not None:
        return EntityIdentity(DB_IDENT, ident)
    return EntityIdentity(SOURCE_EID, eid)


def unique_attribute_identity(
    attribute: str, fallback: IdentityResolver = default_identity
) -> IdentityResolver:
    """Prefer a domain-specific unique attribute, e.g. ``:person/email``."""

    def _resolve(view: SourceView, eid: int) -> EntityIdentity:
        value = view.entity(eid).get(attribute)
        if value is not None and not isinstance(value, list):
            return EntityIdentity(attribute, value)
        return fallback(view, eid)

    return _resolve
