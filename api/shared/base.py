"""Generic async repository used by the SQL chat store."""
from abc import ABC
from typing import Any, Generic, List, Optional, Tuple, Type, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.shared.entities.base import BaseEntity

T = TypeVar("T", bound=BaseEntity)


class BaseRepository(ABC, Generic[T]):
    """Entity access bound to one session; callers own the transaction."""

    model: Type[T]

    def __init__(self, session: AsyncSession):
        self.session = session

    def _where(self, stmt: Select, filters: dict) -> Select:
        # Unknown fields and None values are skipped; sequences become IN (...)
        for field_name, value in filters.items():
            column = getattr(self.model, field_name, None)
            if column is None or value is None:
                continue
            if isinstance(value, (list, tuple, set)):
                stmt = stmt.where(column.in_(list(value)))
            else:
                stmt = stmt.where(column == value)
        return stmt

    def _ordered(self, stmt: Select, order_by: Optional[str]) -> Select:
        """Apply ``order_by`` such as ``"-created_at,-id"``; ``-`` means descending."""
        for part in (order_by or "").split(","):
            part = part.strip()
            column = getattr(self.model, part.lstrip("-"), None)
            if not part or column is None:
                continue
            stmt = stmt.order_by(column.desc() if part.startswith("-") else column.asc())
        return stmt

    async def create(self, entity: T) -> T:
        self.session.add(entity)
        await self.session.flush()
        await self.session.refresh(entity)
        return entity

    async def get_by_id(self, entity_id: str) -> Optional[T]:
        return await self.session.get(self.model, entity_id)

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        order_by: Optional[str] = None,
        **filters: Any,
    ) -> Tuple[List[T], int]:
        """Return one page of matching entities and the total match count."""
        stmt = self._ordered(self._where(select(self.model), filters), order_by)
        result = await self.session.execute(stmt.offset(offset).limit(limit))
        return list(result.scalars().all()), await self.count(**filters)

    async def count(self, **filters: Any) -> int:
        stmt = self._where(select(func.count(self.model.id)), filters)
        result = await self.session.execute(stmt)
        return int(result.scalar() or 0)
