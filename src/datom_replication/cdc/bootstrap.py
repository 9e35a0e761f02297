"""Destination bootstrap: replication schema and metadata record."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from ..model import (
    METADATA,
    REPLICATION_PARTITION,
    SOURCE_EID,
    SOURCE_T,
    AttributeDef,
    EntityDef,
    PartitionDef,
    Uniqueness,
    ValueType,
)
from ..stores.base import DestinationStore

logger = logging.getLogger(__name__)

Bootstrap = Callable[[DestinationStore, Optional[datetime]], int]

REPLICATION_SCHEMA = (
    AttributeDef(SOURCE_EID, ValueType.LONG, unique=Uniqueness.IDENTITY),
    AttributeDef(SOURCE_T, ValueType.LONG),
    PartitionDef(REPLICATION_PARTITION),
)

METADATA_ENTITY = EntityDef(METADATA, partition=REPLICATION_PARTITION)


def bootstrap_destination(
    destination: DestinationStore, tx_instant: Optional[datetime]
) -> int:
    """Ensure the replication schema and metadata entity exist.

    - ``:replication/source-eid`` (long, unique identity) ties each replicated
      entity to its source entity.
    - ``:replication/source-t`` (long) holds the checkpoint.
    - ``:replication/metadata`` lives in the ``:replication`` partition and
      starts out without a ``source-t``.

    Every definition is create-if-absent, so repeated calls are no-ops.  The
    instant of the first replicated transaction is used for these commits so
    the destination history does not start later than the data it mirrors.
    Returns the number of definitions actually created.
    """

    created = destination.create_if_absent(REPLICATION_SCHEMA, tx_instant)
    created += destination.create_if_absent((METADATA_ENTITY,), tx_instant)
    if created:
        logger.info("bootstrapped destination (%d definitions created)", created)
    else:
        logger.info("destination already bootstrapped")
    return created
