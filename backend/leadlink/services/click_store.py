"""
Click store.

Thin async repository over the ``clicks`` table. Every read that can match
more than one row is ordered by ``created_at`` descending so callers always
get the most recent match first. Writes are scoped to a single click id.

Database failures surface as StoreUnavailable; a violated unique index on
the click token surfaces as StoreConflictError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leadlink.core.errors import StoreUnavailable
from leadlink.models.campaign import Campaign
from leadlink.models.click import Click, ClickStatus, utc_now

logger = logging.getLogger(__name__)

# Columns callers may filter or group on
FILTERABLE_FIELDS = {
    "id",
    "phone_number",
    "ip_address",
    "user_agent",
    "fbclid",
    "gclid",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "kommo_status",
    "kommo_lead_id",
    "campaign_id",
}


class StoreConflictError(Exception):
    """A unique constraint rejected the write."""


@dataclass
class ClickFilter:
    """Filter over clicks.

    ``equals`` and ``any_of`` map column names to a value / a set of values;
    ``is_null`` and ``not_null`` list columns; ``created_gte`` and
    ``created_lte`` bound the creation time.
    """
    equals: Dict[str, Any] = field(default_factory=dict)
    any_of: Dict[str, Sequence[Any]] = field(default_factory=dict)
    is_null: Sequence[str] = ()
    not_null: Sequence[str] = ()
    created_gte: Optional[datetime] = None
    created_lte: Optional[datetime] = None

    def conditions(self) -> list:
        clauses = []
        for name, value in self.equals.items():
            clauses.append(_column(name) == value)
        for name, values in self.any_of.items():
            clauses.append(_column(name).in_(list(values)))
        for name in self.is_null:
            clauses.append(_column(name).is_(None))
        for name in self.not_null:
            clauses.append(_column(name).is_not(None))
        if self.created_gte is not None:
            clauses.append(Click.created_at >= self.created_gte)
        if self.created_lte is not None:
            clauses.append(Click.created_at <= self.created_lte)
        return clauses


def _column(name: str):
    if name not in FILTERABLE_FIELDS:
        raise ValueError(f"Unsupported click filter field: {name}")
    return getattr(Click, name)


def as_uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


class ClickStore:
    """Async CRUD over clicks, one session per operation."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def create(self, **fields: Any) -> Click:
        """Insert a click and return it."""
        click = Click(**fields)
        try:
            async with self.session_maker() as session:
                session.add(click)
                await session.commit()
                await session.refresh(click)
        except IntegrityError as exc:
            raise StoreConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"could not create click: {exc}") from exc
        return click

    async def get(self, click_id: Any) -> Optional[Click]:
        click_uuid = as_uuid(click_id)
        if click_uuid is None:
            return None
        try:
            async with self.session_maker() as session:
                return await session.get(Click, click_uuid)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"could not load click {click_id}: {exc}") from exc

    async def find_first(self, click_filter: ClickFilter) -> Optional[Click]:
        """Most recent click matching the filter."""
        query = (
            select(Click)
            .where(*click_filter.conditions())
            .order_by(Click.created_at.desc(), Click.id.desc())
            .limit(1)
        )
        try:
            async with self.session_maker() as session:
                result = await session.execute(query)
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"click lookup failed: {exc}") from exc

    async def list(
        self,
        click_filter: Optional[ClickFilter] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> List[Click]:
        click_filter = click_filter or ClickFilter()
        query = (
            select(Click)
            .where(*click_filter.conditions())
            .order_by(Click.created_at.desc(), Click.id.desc())
            .offset(offset)
            .limit(limit)
        )
        try:
            async with self.session_maker() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"click listing failed: {exc}") from exc

    async def count(self, click_filter: Optional[ClickFilter] = None) -> int:
        click_filter = click_filter or ClickFilter()
        query = select(func.count(Click.id)).where(*click_filter.conditions())
        try:
            async with self.session_maker() as session:
                result = await session.execute(query)
                return int(result.scalar() or 0)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"click count failed: {exc}") from exc

    async def group_by(
        self,
        field_name: str,
        click_filter: Optional[ClickFilter] = None,
    ) -> Dict[Any, int]:
        """Count clicks per distinct value of ``field_name``."""
        click_filter = click_filter or ClickFilter()
        column = _column(field_name)
        query = (
            select(column, func.count(Click.id))
            .where(*click_filter.conditions())
            .group_by(column)
        )
        try:
            async with self.session_maker() as session:
                result = await session.execute(query)
                return {value: int(count) for value, count in result.all()}
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"click grouping failed: {exc}") from exc

    async def update(self, click_id: Any, **fields: Any) -> bool:
        """Unconditional partial update. Returns False when no row matched."""
        return await self._update(click_id, fields, guard=None)

    async def update_unless_success(
        self,
        click_id: Any,
        require_unlinked: bool = False,
        **fields: Any,
    ) -> bool:
        """Partial update that never touches a click already in ``success``.

        The status check happens inside the UPDATE statement, so a concurrent
        writer that reached ``success`` first always wins. With
        ``require_unlinked`` the click must also have no lead id yet.
        Returns True when the row was updated.
        """
        guards = [Click.kommo_status != ClickStatus.SUCCESS.value]
        if require_unlinked:
            guards.append(Click.kommo_lead_id.is_(None))
        return await self._update(click_id, fields, guard=guards)

    async def _update(self, click_id: Any, fields: Dict[str, Any], guard: Optional[list]) -> bool:
        click_uuid = as_uuid(click_id)
        if click_uuid is None:
            return False
        fields = {**fields, "updated_at": utc_now()}
        statement = update(Click).where(Click.id == click_uuid)
        if guard:
            statement = statement.where(*guard)
        statement = statement.values(**fields).execution_options(synchronize_session=False)
        try:
            async with self.session_maker() as session:
                result = await session.execute(statement)
                await session.commit()
                return result.rowcount > 0
        except IntegrityError as exc:
            raise StoreConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"could not update click {click_id}: {exc}") from exc

    async def campaign_id_for(self, name: Optional[str]) -> Optional[UUID]:
        """Id of the campaign called ``name``, if one exists."""
        if not name:
            return None
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(Campaign.id).where(Campaign.name == name).limit(1)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"campaign lookup failed: {exc}") from exc
