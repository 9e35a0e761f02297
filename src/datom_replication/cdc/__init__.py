"""Replication pipeline: log polling, translation, bootstrap and orchestration."""

from .bootstrap import METADATA_ENTITY, REPLICATION_SCHEMA, bootstrap_destination
from .checkpoint import read_source_t, resume_position
from .identity import IdentityResolver, default_identity, unique_attribute_identity
from .metrics import ReplicatorMetrics
from .poller import (
    CancellationToken,
    TransactionPoller,
    TransactionStream,
    open_transaction_stream,
)
from .replicator import (
    Replicator,
    ReplicatorOptions,
    ReplicatorState,
    build_replicator,
)
from .translate import TranslationSession, translate_transaction

__all__ = [
    "CancellationToken",
    "IdentityResolver",
    "METADATA_ENTITY",
    "REPLICATION_SCHEMA",
    "Replicator",
    "ReplicatorMetrics",
    "ReplicatorOptions",
    "ReplicatorState",
    "TransactionPoller",
    "TransactionStream",
    "TranslationSession",
    "bootstrap_destination",
    "build_replicator",
    "default_identity",
    "open_transaction_stream",
    "read_source_t",
    "resume_position",
    "translate_transaction",
    "unique_attribute_identity",
]
