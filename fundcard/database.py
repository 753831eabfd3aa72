"""
Database engine, session management, and base model class.

This module sets up SQLAlchemy 2.0 with async support. Key components:

  - engine: The async database engine (connection pool for production DBs)
  - AsyncSessionLocal: Factory for creating async database sessions
  - Base: Declarative base class that all ORM models inherit from
  - get_db(): FastAPI dependency that provides a session per request
  - insert_if_absent(): atomic "insert unless the unique key exists"

Idempotency at the persistence boundary:
  Issuance and funding must serialize on unique keys across processes, so an
  in-memory lock is not enough. insert_if_absent() emits
  INSERT ... ON CONFLICT DO NOTHING (SQLite and PostgreSQL both support it)
  and reports whether this caller's row won.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from fundcard.config import settings
from fundcard.exceptions import CardEngineError


# echo=True in debug mode logs all SQL statements.
# Note: ciphertext columns appear in echoed INSERTs; plaintext never does.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
)

# expire_on_commit=False prevents lazy-load errors after commit in async context.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


async def get_db():
    """
    FastAPI dependency that provides a database session.

    The session is committed on success and rolled back on any unexpected
    exception, then closed when the request completes.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except CardEngineError:
            # Business rule rejections (e.g. InsufficientBalanceError) commit so
            # audit rows like declined spends are persisted.
            await session.commit()
            raise
        except Exception:
            await session.rollback()
            raise


_INSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


async def insert_if_absent(
    db: AsyncSession,
    model: type[Base],
    values: dict[str, Any],
    conflict_columns: list[str],
) -> bool:
    """
    Insert a row unless one already exists for the given unique columns.

    Args:
        db: Database session (the insert joins its current transaction).
        model: ORM model class whose table receives the row.
        values: Column values for the new row. Python-side column defaults
                still apply to columns left out.
        conflict_columns: Columns of the unique constraint that decides
                          "already exists".

    Returns:
        True if this call inserted the row, False if it already existed.
    """
    dialect = db.get_bind().dialect.name
    try:
        insert_fn = _INSERT_DIALECTS[dialect]
    except KeyError:
        raise RuntimeError(f"insert_if_absent is not supported on {dialect}") from None

    stmt = (
        insert_fn(model.__table__)
        .values(**values)
        .on_conflict_do_nothing(index_elements=conflict_columns)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1
