"""PostgreSQL-backed datom store.

History lives in ``datoms`` (one row per fact, ordered by ``seq``), the
current state in ``current_datoms``.  Every commit runs inside one database
transaction holding an exclusive lock on ``transactions`` so ``t`` values are
allocated strictly in order and a failed commit rolls back completely.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from ..db import Connection, Error, Json, connect, errors
from ..errors import CommitError, SourceReadError, TransientCommitError
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

_SCHEMA_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_TRANSIENT_ERRORS = (errors.QueryCanceled, errors.LockNotAvailable)

DB_IDENT_EID = make_eid(0, 10)


def _encode(value: object) -> object:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"value of type {type(value).__name__} is not storable")


def _dumps(value: object) -> str:
    return json.dumps(value, default=_encode, sort_keys=True)


def _jsonb(value: object) -> Json:
    return Json(value, dumps=_dumps)


def _row_to_attribute(row: Dict[str, object]) -> AttributeMetadata:
    uniqueness = row.get("uniqueness")
    return AttributeMetadata(
        id=int(row["eid"]),
        ident=str(row["ident"]),
        value_type=ValueType(row["value_type"]),
        cardinality=Cardinality(row["cardinality"]),
        unique=Uniqueness(uniqueness) if uniqueness else None,
    )


class _PostgresView:
    """View at ``basis_t``; current-state queries when ``current`` is set."""

    def __init__(
        self,
        store: "PostgresDatomStore",
        basis_t: int,
        *,
        current: bool,
    ) -> None:
        self._store = store
        self._basis_t = basis_t
        self._current = current
        self._attributes = store._attributes_at(basis_t)
        self._by_ident = {attr.ident: attr for attr in self._attributes.values()}

    @property
    def basis_t(self) -> int:
        return self._basis_t

    def _pairs(self, eid: int) -> List[Tuple[int, object]]:
        s = self._store.schema
        conn = self._store._ensure_conn()
        if self._current:
            rows = conn.execute(
                f"SELECT a, v FROM {s}.current_datoms WHERE e = %s",
                (eid,),
            ).fetchall()
            return [(int(row["a"]), row["v"]) for row in rows]
        rows = conn.execute(
            f"""
            SELECT DISTINCT ON (a, v) a, v, added
              FROM {s}.datoms
             WHERE e = %s
               AND t <= %s
             ORDER BY a, v, seq DESC
            """,
            (eid, self._basis_t),
        ).fetchall()
        return [(int(row["a"]), row["v"]) for row in rows if row["added"]]

    def entity(self, eid: int) -> Dict[str, object]:
        result: Dict[str, object] = {}
        try:
            pairs = self._pairs(eid)
        except Error as exc:
            raise SourceReadError(f"entity {eid} could not be read: {exc}") from exc
        for aid, value in pairs:
            attr = self._attributes.get(aid)
            if attr is None:
                continue
            if attr.cardinality is Cardinality.MANY:
                result.setdefault(attr.ident, []).append(value)  # type: ignore[union-attr]
            else:
                result[attr.ident] = value
        return result

    def ident(self, eid: int) -> Optional[str]:
        attr = self._attributes.get(eid)
        if attr is not None:
            return attr.ident
        value = self.entity(eid).get(DB_IDENT)
        return None if value is None else str(value)

    def attribute(self, key) -> Optional[AttributeMetadata]:
        if isinstance(key, str):
            return self._by_ident.get(key)
        return self._attributes.get(key)

    def partition(self, eid: int) -> str:
        name = self._store._partition_name(partition_index(eid))
        if name is None:
            raise SourceReadError(f"entity {eid} belongs to no known partition")
        return name

    def lookup(self, identity: EntityIdentity) -> Optional[int]:
        attr = self._by_ident.get(identity.attribute)
        if attr is None or attr.unique is None:
            return None
        if identity.attribute == DB_IDENT and isinstance(identity.value, str):
            schema_attr = self._by_ident.get(identity.value)
            if schema_attr is not None:
                return schema_attr.id
        s = self._store.schema
        row = self._store._ensure_conn().execute(
            f"""
            SELECT e FROM {s}.current_datoms
             WHERE a = %s AND v = %s::jsonb
             LIMIT 1
            """,
            (attr.id, _jsonb(identity.value)),
        ).fetchone()
        return None if row is None else int(row["e"])


class _PostgresStage(StagedWrite):
    """Applies one commit's facts inside an open database transaction."""

    def __init__(self, store: "PostgresDatomStore", conn: Connection, t: int) -> None:
        super().__init__(t)
        self._store = store
        self._conn = conn
        self._attributes = store._attributes_at(t)
        self._by_ident = {attr.ident: attr for attr in self._attributes.values()}

    def install(self, attr: AttributeMetadata) -> None:
        self._attributes[attr.id] = attr
        self._by_ident[attr.ident] = attr

    def attribute_by_ident(self, ident: str) -> Optional[AttributeMetadata]:
        return self._by_ident.get(ident)

    def values_of(self, e: int, aid: int) -> List[object]:
        s = self._store.schema
        rows = self._conn.execute(
            f"SELECT v FROM {s}.current_datoms WHERE e = %s AND a = %s",
            (e, aid),
        ).fetchall()
        return [row["v"] for row in rows]

    def unique_owner(self, aid: int, value: object) -> Optional[int]:
        s = self._store.schema
        row = self._conn.execute(
            f"""
            SELECT e FROM {s}.current_datoms
             WHERE a = %s AND v = %s::jsonb
             LIMIT 1
            """,
            (aid, _jsonb(value)),
        ).fetchone()
        return None if row is None else int(row["e"])

    def allocate(self, partition: str) -> int:
        s = self._store.schema
        row = self._conn.execute(
            f"""
            UPDATE {s}.partitions
               SET next_n = next_n + 1
             WHERE ident = %s
         RETURNING idx, next_n - 1 AS n
            """,
            (partition,),
        ).fetchone()
        if row is None:
            raise CommitError(
                f"unknown partition {partition}", kind="unknown-partition"
            )
        return make_eid(int(row["idx"]), int(row["n"]))

    def record(self, fact: Fact) -> None:
        s = self._store.schema
        value = _jsonb(fact.v)
        self._conn.execute(
            f"""
            INSERT INTO {s}.datoms (e, a, v, t, added)
            VALUES (%s, %s, %s::jsonb, %s, %s)
            """,
            (fact.e, fact.a, value, fact.t, fact.added),
        )
        if fact.added:
            self._conn.execute(
                f"""
                INSERT INTO {s}.current_datoms (e, a, v)
                VALUES (%s, %s, %s::jsonb)
                ON CONFLICT DO NOTHING
                """,
                (fact.e, fact.a, value),
            )
        else:
            self._conn.execute(
                f"""
                DELETE FROM {s}.current_datoms
                 WHERE e = %s AND a = %s AND v = %s::jsonb
                """,
                (fact.e, fact.a, value),
            )


class PostgresDatomStore:
    """Datom database persisted in PostgreSQL; usable as source and destination."""

    def __init__(
        self,
        *,
        conninfo: Optional[str] = None,
        conn: Optional[Connection] = None,
        schema: str = "datoms",
        commit_timeout_ms: int = 30000,
        log_batch_size: int = 1000,
    ) -> None:
        if conn is None and conninfo is None:
            raise ValueError("either conninfo or conn is required")
        if not _SCHEMA_NAME.match(schema):
            raise ValueError(f"invalid schema name {schema!r}")
        if log_batch_size <= 0:
            raise ValueError("log_batch_size must be positive")
        self.schema = schema
        self._conninfo = conninfo
        self._conn = conn
        self._commit_timeout_ms = max(0, int(commit_timeout_ms))
        self._log_batch_size = log_batch_size

    def _ensure_conn(self) -> Connection:
        if self._conn is not None and not self._conn.closed:
            return self._conn
        conn = connect(self._conninfo)
        self._conn = conn
        return conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    # ------------------------------------------------------------------
    # DDL

    def ensure_tables(self) -> None:
        """Create the store tables and built-in schema if they are missing."""

        s = self.schema
        conn = self._ensure_conn()
        with conn.transaction():
            conn.execute(f"CREATE SCHEMA IF NOT EXISTS {s}")
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {s}.transactions (
                    t BIGINT PRIMARY KEY,
                    instant TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {s}.partitions (
                    idx INTEGER PRIMARY KEY,
                    ident TEXT NOT NULL UNIQUE,
                    next_n BIGINT NOT NULL DEFAULT 1,
                    installed_t BIGINT NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {s}.attributes (
                    eid BIGINT PRIMARY KEY,
                    ident TEXT NOT NULL UNIQUE,
                    value_type TEXT NOT NULL,
                    cardinality TEXT NOT NULL,
                    uniqueness TEXT,
                    installed_t BIGINT NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {s}.datoms (
                    seq BIGSERIAL PRIMARY KEY,
                    e BIGINT NOT NULL,
                    a BIGINT NOT NULL,
                    v JSONB NOT NULL,
                    t BIGINT NOT NULL REFERENCES {s}.transactions (t),
                    added BOOLEAN NOT NULL
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS datoms_t_idx ON {s}.datoms (t, seq)"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS datoms_e_idx ON {s}.datoms (e, t)"
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {s}.current_datoms (
                    e BIGINT NOT NULL,
                    a BIGINT NOT NULL,
                    v JSONB NOT NULL,
                    PRIMARY KEY (e, a, v)
                )
                """
            )
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS current_datoms_av_idx
                    ON {s}.current_datoms (a, v)
                """
            )
            for index, ident in enumerate((PART_DB, PART_TX, PART_USER)):
                conn.execute(
                    f"""
                    INSERT INTO {s}.partitions (idx, ident, next_n)
                    VALUES (%s, %s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (index, ident, 100 if ident == PART_DB else 1),
                )
            conn.execute(
                f"""
                INSERT INTO {s}.attributes (eid, ident, value_type, cardinality, uniqueness)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                """,
                (
                    DB_IDENT_EID,
                    DB_IDENT,
                    ValueType.KEYWORD.value,
                    Cardinality.ONE.value,
                    Uniqueness.IDENTITY.value,
                ),
            )
        logger.info("datom tables ready in schema %s", s)

    # ------------------------------------------------------------------
    # Source contract

    def log_range(
        self, from_t: Optional[int], to_t: Optional[int] = None
    ) -> List[Transaction]:
        s = self.schema
        try:
            conn = self._ensure_conn()
            tx_rows = conn.execute(
                f"""
                SELECT t, instant FROM {s}.transactions
                 WHERE t >= %s
                   AND (%s::bigint IS NULL OR t < %s::bigint)
                 ORDER BY t
                 LIMIT %s
                """,
                (from_t or 0, to_t, to_t, self._log_batch_size),
            ).fetchall()
            if not tx_rows:
                return []
            first_t = int(tx_rows[0]["t"])
            last_t = int(tx_rows[-1]["t"])
            fact_rows = conn.execute(
                f"""
                SELECT e, a, v, t, added FROM {s}.datoms
                 WHERE t BETWEEN %s AND %s
                 ORDER BY seq
                """,
                (first_t, last_t),
            ).fetchall()
        except Error as exc:
            raise SourceReadError(f"transaction log read failed: {exc}") from exc
        facts: Dict[int, List[Fact]] = {}
        for row in fact_rows:
            fact = Fact(
                e=int(row["e"]),
                a=int(row["a"]),
                v=row["v"],
                t=int(row["t"]),
                added=bool(row["added"]),
            )
            facts.setdefault(fact.t, []).append(fact)
        return [
            Transaction(
                t=int(row["t"]),
                instant=row["instant"],
                facts=tuple(facts.get(int(row["t"]), ())),
            )
            for row in tx_rows
        ]

    def as_of(self, t: int) -> _PostgresView:
        try:
            return _PostgresView(self, t, current=False)
        except Error as exc:
            raise SourceReadError(f"as-of view at t={t} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Destination contract

    def view(self) -> _PostgresView:
        return _PostgresView(self, self._basis_t(), current=True)

    def commit(
        self,
        operations: Sequence[Operation],
        tx_instant: Optional[datetime] = None,
    ) -> CommitResult:
        conn = self._ensure_conn()
        try:
            with conn.transaction():
                t = self._begin(conn, tx_instant)
                stage = _PostgresStage(self, conn, t)
                stage.run(operations)
        except _TRANSIENT_ERRORS as exc:
            raise TransientCommitError(f"commit timed out: {exc}") from exc
        except Error as exc:
            raise CommitError(f"commit failed: {exc}", kind="database") from exc
        logger.debug("committed t=%d with %d facts", t, len(stage.facts))
        return CommitResult(t=t, tempids=dict(stage.tempids))

    def create_if_absent(
        self,
        definitions: Sequence[SchemaDef],
        tx_instant: Optional[datetime] = None,
    ) -> int:
        s = self.schema
        conn = self._ensure_conn()
        created = 0
        try:
            with conn.transaction():
                t = self._begin(conn, tx_instant)
                stage = _PostgresStage(self, conn, t)
                for definition in definitions:
                    if isinstance(definition, PartitionDef):
                        row = conn.execute(
                            f"""
                            INSERT INTO {s}.partitions (idx, ident, installed_t)
                            SELECT COALESCE(MAX(idx), 0) + 1, %s, %s
                              FROM {s}.partitions
                            ON CONFLICT (ident) DO NOTHING
                            RETURNING idx
                            """,
                            (definition.ident, t),
                        ).fetchone()
                        if row is None:
                            continue
                    elif isinstance(definition, AttributeDef):
                        if stage.attribute_by_ident(definition.ident) is not None:
                            continue
                        attr = AttributeMetadata(
                            id=stage.allocate(PART_DB),
                            ident=definition.ident,
                            value_type=definition.value_type,
                            cardinality=definition.cardinality,
                            unique=definition.unique,
                        )
                        conn.execute(
                            f"""
                            INSERT INTO {s}.attributes (
                                eid, ident, value_type, cardinality, uniqueness, installed_t
                            ) VALUES (%s, %s, %s, %s, %s, %s)
                            """,
                            (
                                attr.id,
                                attr.ident,
                                attr.value_type.value,
                                attr.cardinality.value,
                                attr.unique.value if attr.unique else None,
                                t,
                            ),
                        )
                        stage.install(attr)
                    elif isinstance(definition, EntityDef):
                        if stage.lookup(EntityIdentity(DB_IDENT, definition.ident)):
                            continue
                        eid = stage.allocate(definition.partition)
                        stage.assert_value(eid, DB_IDENT, definition.ident)
                    else:
                        raise CommitError(
                            f"unsupported schema definition {definition!r}",
                            kind="bad-operation",
                        )
                    created += 1
                if created == 0:
                    conn.execute(f"DELETE FROM {s}.transactions WHERE t = %s", (t,))
        except _TRANSIENT_ERRORS as exc:
            raise TransientCommitError(f"schema commit timed out: {exc}") from exc
        except Error as exc:
            raise CommitError(f"schema commit failed: {exc}", kind="database") from exc
        if created:
            logger.info("installed %d schema definitions at t=%d", created, t)
        return created

    # ------------------------------------------------------------------
    # Internals

    def _begin(self, conn: Connection, tx_instant: Optional[datetime]) -> int:
        s = self.schema
        if self._commit_timeout_ms:
            conn.execute(
                f"SET LOCAL statement_timeout = {int(self._commit_timeout_ms)}"
            )
        conn.execute(f"LOCK TABLE {s}.transactions IN EXCLUSIVE MODE")
        row = conn.execute(
            f"SELECT COALESCE(MAX(t), 0) + 1 AS t FROM {s}.transactions"
        ).fetchone()
        t = int(row["t"])
        conn.execute(
            f"INSERT INTO {s}.transactions (t, instant) VALUES (%s, %s)",
            (t, tx_instant or datetime.now(timezone.utc)),
        )
        return t

    def _basis_t(self) -> int:
        row = (
            self._ensure_conn()
            .execute(f"SELECT COALESCE(MAX(t), 0) AS t FROM {self.schema}.transactions")
            .fetchone()
        )
        return int(row["t"])

    def _attributes_at(self, basis_t: int) -> Dict[int, AttributeMetadata]:
        rows = (
            self._ensure_conn()
            .execute(
                f"""
                SELECT eid, ident, value_type, cardinality, uniqueness
                  FROM {self.schema}.attributes
                 WHERE installed_t <= %s
                """,
                (basis_t,),
            )
            .fetchall()
        )
        return {int(row["eid"]): _row_to_attribute(row) for row in rows}

    def _partition_name(self, index: int) -> Optional[str]:
        row = (
            self._ensure_conn()
            .execute(
                f"SELECT ident FROM {self.schema}.partitions WHERE idx = %s",
                (index,),
            )
            .fetchone()
        )
        return None if row is None else str(row["ident"])


__all__ = ["PostgresDatomStore"]
