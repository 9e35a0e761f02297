"""Access to the replication checkpoint stored in the destination."""

from __future__ import annotations

import logging
from typing import Optional

from ..model import DB_IDENT, METADATA, SOURCE_T, EntityIdentity
from ..stores.base import DestinationView

logger = logging.getLogger(__name__)

METADATA_IDENTITY = EntityIdentity(DB_IDENT, METADATA)


def read_source_t(view: DestinationView) -> Optional[int]:
    """Return the last fully applied source ``t``, or None if never replicated."""

    eid = view.lookup(METADATA_IDENTITY)
    if eid is None:
        return None
    value = view.entity(eid).get(SOURCE_T)
    if value is None:
        return None
    return int(value)  # type: ignore[arg-type]


def resume_position(view: DestinationView, override: Optional[int] = None) -> Optional[int]:
    """Work out where the poller should start reading the source log."""

    if override is not None:
        return override
    source_t = read_source_t(view)
    if source_t is None:
        logger.info("no replication checkpoint found; starting at the log origin")
        return None
    logger.info("resuming after checkpoint source-t=%d", source_t)
    return source_t + 1


__all__ = ["METADATA_IDENTITY", "read_source_t", "resume_position"]
