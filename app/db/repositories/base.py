"""
Base repository with common database operations.
"""
from typing import Any, Dict, Generic, Optional, Type, TypeVar

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import Base

# Define generic type for models
ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Base repository with common CRUD operations.

    Repositories flush but never commit: the caller that opened the session
    decides where a unit of work ends.
    """

    def __init__(self, session: AsyncSession, model: Type[ModelType]):
        """
        Initialize repository with session and model.

        Args:
            session: Database session
            model: SQLAlchemy model class
        """
        self.session = session
        self.model = model

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """
        Get a record by ID.

        Args:
            id: Record ID

        Returns:
            ModelType: Found record or None
        """
        query = select(self.model).where(self.model.id == id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def add(self, db_obj: ModelType) -> ModelType:
        """
        Add a new record to the session and flush it.

        Args:
            db_obj: Model instance

        Returns:
            ModelType: The flushed record (id and defaults populated)
        """
        self.session.add(db_obj)
        await self.session.flush()
        return db_obj

    async def update_fields(self, db_obj: ModelType, values: Dict[str, Any]) -> ModelType:
        """
        Set attributes on a loaded record and flush.

        None values are skipped so partial data never blanks a column.
        """
        for field, value in values.items():
            if value is not None and hasattr(db_obj, field):
                setattr(db_obj, field, value)
        await self.session.flush()
        return db_obj

    async def count(self, *, filters: Optional[Dict[str, Any]] = None) -> int:
        """
        Count records with optional filtering.

        Args:
            filters: Optional filters as dict

        Returns:
            int: Number of records
        """
        query = self._apply_filters(select(func.count()).select_from(self.model), filters)
        result = await self.session.execute(query)
        return result.scalar_one()

    def _apply_filters(self, query, filters: Optional[Dict[str, Any]]):
        if filters:
            for attr_name, attr_value in filters.items():
                if hasattr(self.model, attr_name) and attr_value is not None:
                    query = query.where(getattr(self.model, attr_name) == attr_value)
        return query
