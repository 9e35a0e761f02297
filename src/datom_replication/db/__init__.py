"""psycopg2 connection used by the PostgreSQL datom store."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence

import psycopg2
from psycopg2 import Error, OperationalError, errors
from psycopg2.extensions import connection as _PgConnection
from psycopg2.extras import Json, RealDictCursor


class Connection(_PgConnection):
    """Autocommit connection yielding dict rows; writes go through ``transaction()``."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.autocommit = True
        self.cursor_factory = RealDictCursor

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed statements atomically; roll back on any exception."""
        self.autocommit = False
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()
        finally:
            self.autocommit = True

    def execute(
        self, query: str, params: Optional[Sequence[Any]] = None
    ) -> RealDictCursor:
        cursor = self.cursor()
        cursor.execute(query, params)
        return cursor


def connect(conninfo: str) -> Connection:
    return psycopg2.connect(conninfo, connection_factory=Connection)


__all__ = [
    "Connection",
    "Error",
    "Json",
    "OperationalError",
    "connect",
    "errors",
]
