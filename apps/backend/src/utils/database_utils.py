"""
Database Utilities

Reusable transaction management shared by the repositories: join a caller's
session when one is supplied, otherwise open a session and commit on exit,
translating driver errors into the application exception taxonomy.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator
import logging

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.backend.src.core.exceptions import (
    ConstraintError,
    DatabaseOperationError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _constraint_kind(error: IntegrityError) -> str:
    text = str(error.orig).lower()
    if "unique" in text or "duplicate" in text:
        return "unique"
    if "foreign key" in text:
        return "foreign_key"
    if "not null" in text:
        return "not_null"
    return "integrity"


@asynccontextmanager
async def database_session(
    session_factory: async_sessionmaker[AsyncSession],
    session: AsyncSession | None = None,
    operation: str = "database_operation",
) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for a transactional unit of work.

    Usage:
        async with database_session(session_factory, session) as session:
            session.add(obj)

    Args:
        session_factory: Async session factory used when no session is given
        session: Optional caller session; its transaction is joined, not committed
        operation: Operation name attached to translated errors

    Raises:
        ConstraintError: On integrity violations reported by the store
        DatabaseOperationError: On other database errors
    """
    try:
        if session is not None:
            yield session
            return

        async with session_factory() as own_session:
            async with own_session.begin():
                yield own_session
    except IntegrityError as e:
        logger.warning(f"Constraint violation during {operation}: {e.orig}")
        raise ConstraintError(
            f"Constraint violation during {operation}: {e.orig}",
            constraint=_constraint_kind(e),
        ) from e
    except SQLAlchemyError as e:
        logger.error(f"Database error during {operation}: {e}")
        raise DatabaseOperationError(f"Database operation failed: {e}", operation=operation) from e


def validate_input(
    schema: type[BaseModel],
    data: BaseModel | dict[str, Any],
    resource_type: str,
) -> Any:
    """
    Validate repository input against a pydantic schema.

    Pydantic failures are re-raised as ValidationError naming the first
    offending field.
    """
    if isinstance(data, schema):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True, exclude={"kind"})

    try:
        return schema.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(
            f"Invalid {resource_type} input: {field or 'payload'}: {first.get('msg')}",
            field=field,
            value=first.get("input"),
            validation_type=first.get("type", "schema"),
        ) from e
