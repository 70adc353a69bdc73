"""SQL expressions evaluated by the database server."""

from typing import Optional

import numpy as np
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement
from sqlalchemy.types import Float


class db_epoch(FunctionElement):
    """Current database time as epoch seconds.

    Lock expiry and stale-claim checks use this so that every worker is
    judged against the same clock.
    """

    type = Float()
    inherit_cache = True
    name = "db_epoch"


@compiles(db_epoch, "postgresql")
def _pg_db_epoch(element, compiler, **kw):
    return "EXTRACT(EPOCH FROM clock_timestamp())::float8"


@compiles(db_epoch, "sqlite")
def _sqlite_db_epoch(element, compiler, **kw):
    return "((julianday('now') - 2440587.5) * 86400.0)"


@compiles(db_epoch)
def _default_db_epoch(element, compiler, **kw):
    raise NotImplementedError(f"db_epoch is not supported on {compiler.dialect.name}")


class cosine_distance(FunctionElement):
    """Cosine distance between two vector expressions (``1 - similarity``)."""

    type = Float()
    inherit_cache = True
    name = "cosine_distance"


@compiles(cosine_distance, "postgresql")
def _pg_cosine_distance(element, compiler, **kw):
    left, right = list(element.clauses)
    return f"({compiler.process(left, **kw)} <=> {compiler.process(right, **kw)})"


@compiles(cosine_distance, "sqlite")
def _sqlite_cosine_distance(element, compiler, **kw):
    # Resolved by the function registered in register_sqlite_functions
    return f"cosine_distance({compiler.process(element.clauses, **kw)})"


@compiles(cosine_distance)
def _default_cosine_distance(element, compiler, **kw):
    raise NotImplementedError(f"cosine_distance is not supported on {compiler.dialect.name}")


def _parse_vector(value) -> Optional[np.ndarray]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    return np.array(value.strip("[]").split(","), dtype=np.float64)


def sqlite_cosine_distance(left, right) -> Optional[float]:
    """Distance over pgvector's text form (``[1.0,2.0]``). NULL for zero vectors."""
    a = _parse_vector(left)
    b = _parse_vector(right)
    if a is None or b is None or a.shape != b.shape:
        return None
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return None
    return 1.0 - float(np.dot(a, b)) / norm


def register_sqlite_functions(dbapi_connection) -> None:
    dbapi_connection.create_function("cosine_distance", 2, sqlite_cosine_distance)
