"""
Base repository with common CRUD operations.
"""

from typing import TypeVar, Generic, Type, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import uuid
from datetime import datetime, timezone

from app.database.models import Base

ModelType = TypeVar("ModelType", bound=Base)


def utc_now():
    """Get current UTC time."""
    return datetime.now(timezone.utc)


class BaseRepository(Generic[ModelType]):
    """
    Base repository with common CRUD operations.
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Get entity by ID."""
        query = select(self.model).where(getattr(self.model, 'id') == id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> ModelType:
        """Create a new entity."""
        if 'id' not in kwargs:
            kwargs['id'] = str(uuid.uuid4())

        entity = self.model(**kwargs)
        self.session.add(entity)
        await self.session.flush()
        await self.session.refresh(entity)
        return entity

    async def apply(self, entity: ModelType, **kwargs) -> ModelType:
        """Set the given attributes on a loaded entity. None never overwrites."""
        for key, value in kwargs.items():
            if hasattr(entity, key) and value is not None:
                setattr(entity, key, value)

        if hasattr(entity, 'updated_at'):
            setattr(entity, 'updated_at', utc_now())

        await self.session.flush()
        await self.session.refresh(entity)
        return entity
