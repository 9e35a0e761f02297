"""Value objects shared by the stores and the replication pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple, Union

DB_IDENT = ":db/ident"

PART_DB = ":db.part/db"
PART_TX = ":db.part/tx"
PART_USER = ":db.part/user"

SOURCE_EID = ":replication/source-eid"
SOURCE_T = ":replication/source-t"
METADATA = ":replication/metadata"
REPLICATION_PARTITION = ":replication"

PARTITION_SHIFT = 42
_ENTITY_MASK = (1 << PARTITION_SHIFT) - 1


def make_eid(partition_index: int, n: int) -> int:
    return (partition_index << PARTITION_SHIFT) | n


def partition_index(eid: int) -> int:
    return eid >> PARTITION_SHIFT


def entity_number(eid: int) -> int:
    return eid & _ENTITY_MASK


class ValueType(str, Enum):
    STRING = "string"
    KEYWORD = "keyword"
    LONG = "long"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    INSTANT = "instant"
    UUID = "uuid"
    REF = "ref"


class Cardinality(str, Enum):
    ONE = "one"
    MANY = "many"


class Uniqueness(str, Enum):
    IDENTITY = "identity"
    VALUE = "value"


@dataclass(frozen=True)
class AttributeMetadata:
    """Attribute definition as installed in a store."""

    id: int
    ident: str
    value_type: ValueType
    cardinality: Cardinality = Cardinality.ONE
    unique: Optional[Uniqueness] = None

    @property
    def is_ref(self) -> bool:
        return self.value_type is ValueType.REF


@dataclass(frozen=True)
class Fact:
    """A single datom: entity, attribute id, value, transaction and direction."""

    e: int
    a: int
    v: object
    t: int
    added: bool = True


@dataclass(frozen=True)
class Transaction:
    t: int
    instant: datetime
    facts: Tuple[Fact, ...] = ()


@dataclass(frozen=True)
class EntityIdentity:
    """Lookup ref naming an entity independently of its internal id."""

    attribute: str
    value: object


@dataclass(frozen=True)
class TempId:
    """Provisional destination id, resolved to a real eid on commit."""

    partition: str
    index: int


DestinationId = Union[int, TempId]


@dataclass(frozen=True)
class Assertion:
    entity: DestinationId
    attribute: str
    value: object
    identity: Optional[EntityIdentity] = None


@dataclass(frozen=True)
class Retraction:
    identity: Union[EntityIdentity, int]
    attribute: str
    value: object


@dataclass(frozen=True)
class CheckpointUpdate:
    source_t: int


Operation = Union[Assertion, Retraction, CheckpointUpdate]


@dataclass(frozen=True)
class WriteSet:
    """Operations committed atomically for one replicated transaction."""

    t: int
    instant: datetime
    operations: Tuple[Operation, ...] = ()

    @property
    def fact_count(self) -> int:
        return sum(1 for op in self.operations if not isinstance(op, CheckpointUpdate))


@dataclass(frozen=True)
class AttributeDef:
    ident: str
    value_type: ValueType
    cardinality: Cardinality = Cardinality.ONE
    unique: Optional[Uniqueness] = None


@dataclass(frozen=True)
class PartitionDef:
    ident: str


@dataclass(frozen=True)
class EntityDef:
    ident: str
    partition: str = PART_USER


SchemaDef = Union[AttributeDef, PartitionDef, EntityDef]


@dataclass(frozen=True)
class CommitResult:
    t: int
    tempids: Dict[TempId, int] = field(default_factory=dict)
