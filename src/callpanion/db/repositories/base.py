"""Base Repository Pattern for CallPanion.

Provides generic CRUD operations with async SQLAlchemy support.
All specialized repositories inherit from BaseRepository.
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from callpanion.core.exceptions import NotFoundError
from callpanion.db.base import Base

# Type variable for model classes
ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Generic base repository with async CRUD operations.

    Usage:
        class RelativeRepository(BaseRepository[RelativeModel]):
            def __init__(self, session: AsyncSession):
                super().__init__(RelativeModel, session)
    """

    def __init__(self, model: type[ModelT], session: AsyncSession):
        """Initialize repository with model class and session.

        Args:
            model: SQLAlchemy model class
            session: Async database session
        """
        self._model = model
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current database session."""
        return self._session

    # ========================================================================
    # Basic CRUD Operations
    # ========================================================================

    async def get(self, id: UUID | str, *, fresh: bool = False) -> ModelT | None:
        """Get a single record by ID.

        Args:
            id: UUID or string primary key
            fresh: Overwrite any identity-map copy with the stored row

        Returns:
            Model instance or None if not found
        """
        if isinstance(id, str):
            try:
                id = UUID(id)
            except ValueError:
                return None

        stmt = select(self._model).where(self._model.id == id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_raise(self, id: UUID | str, *, fresh: bool = False) -> ModelT:
        """Get a single record by ID, raising NotFoundError if missing."""
        obj = await self.get(id, fresh=fresh)
        if obj is None:
            raise NotFoundError(
                f"{self._model.__name__.removesuffix('Model')} not found",
                details={"id": str(id)},
            )
        return obj

    async def create(self, obj_in: ModelT) -> ModelT:
        """Create a new record.

        Args:
            obj_in: Model instance to create

        Returns:
            Created model instance with generated ID
        """
        self._session.add(obj_in)
        await self._session.flush()
        await self._session.refresh(obj_in)
        return obj_in

    # ========================================================================
    # Conditional Writes
    # ========================================================================

    async def conditional_update(
        self,
        conditions: Sequence[Any],
        updates: dict[str, Any],
    ) -> int:
        """Run a single ``UPDATE ... WHERE <conditions>`` statement.

        The caller decides success from the returned row count; the
        statement is the only write, so two racing callers cannot both
        match the same guarded row.

        Args:
            conditions: SQLAlchemy boolean expressions
            updates: Column name to new value mappings

        Returns:
            Number of rows updated
        """
        stmt = (
            update(self._model)
            .where(*conditions)
            .values(**updates)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    # ========================================================================
    # Transaction Helpers
    # ========================================================================

    async def commit(self) -> None:
        """Commit the current transaction."""
        await self._session.commit()

    async def rollback(self) -> None:
        """Rollback the current transaction.

        Expires every loaded instance; use ``release`` when nothing was written.
        """
        await self._session.rollback()

    async def release(self) -> None:
        """End a transaction whose guarded UPDATE matched no rows.

        Nothing is written, so this commits to drop SQLite's write lock
        while keeping loaded instances usable (``expire_on_commit=False``).
        """
        await self._session.commit()
