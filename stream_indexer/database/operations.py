"""
Database operations module for idempotent single-row writes.
Provides insert-if-absent and UPSERT using the dialect's ON CONFLICT support.
"""

import logging
from typing import List, Dict, Any, Type, Optional, Union
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, SQLModel

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _dialect_insert(session: Session, model_class: Type[SQLModel]):
    """Build an INSERT that supports ON CONFLICT for the session's dialect."""
    dialect = session.get_bind().dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise ValueError(f"ON CONFLICT writes are not supported for dialect {dialect}")
    return insert(model_class.__table__)


def insert_if_absent(
    session: Session,
    model_class: Type[SQLModel],
    values: Dict[str, Any],
    conflict_columns: Union[str, List[str]]
) -> bool:
    """Insert a row unless one with the same key already exists.

    Args:
        session: Database session (the caller commits)
        model_class: SQLModel class representing the target table
        values: Column values for the new row
        conflict_columns: Column(s) forming the natural key

    Returns:
        True if a row was inserted, False if the key was already present
    """
    if isinstance(conflict_columns, str):
        conflict_columns = [conflict_columns]

    stmt = _dialect_insert(session, model_class).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
    result = session.execute(stmt)
    return result.rowcount == 1


def upsert_record(
    session: Session,
    model_class: Type[SQLModel],
    values: Dict[str, Any],
    conflict_columns: Union[str, List[str]],
    update_columns: Optional[List[str]] = None
) -> None:
    """Insert a row or update the given columns of the existing row.

    Columns missing from update_columns are written on insert only.

    Args:
        session: Database session (the caller commits)
        model_class: SQLModel class representing the target table
        values: Column values for the row
        conflict_columns: Column(s) forming the natural key
        update_columns: Columns to overwrite on conflict (if None, all non-key columns in values)
    """
    if isinstance(conflict_columns, str):
        conflict_columns = [conflict_columns]

    if update_columns is None:
        update_columns = [col for col in values if col not in conflict_columns]

    stmt = _dialect_insert(session, model_class).values(**values)
    if update_columns:
        update_dict = {col: stmt.excluded[col] for col in update_columns}
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_columns,
            set_=update_dict
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)

    session.execute(stmt)
