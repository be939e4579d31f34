"""
Append-only repository for state snapshots.
"""

from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.backend.src.core.database import utcnow
from apps.backend.src.core.exceptions import ConstraintError, NotFoundError, ValidationError
from apps.backend.src.models.state_snapshot import StateSnapshot
from apps.backend.src.schemas.common import ChangeType, PaginationParams, ResourceType
from apps.backend.src.utils.database_utils import database_session

logger = logging.getLogger(__name__)

_FILTERS = ("resource_type", "resource_id", "change_type", "since", "until")


class StateSnapshotRepository:
    """
    Immutable audit log of resource state.

    Rows are only ever appended; snapshot times for one resource are kept
    strictly increasing so history order equals write order.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(
        self,
        resource_type: ResourceType | str,
        resource_id: Any,
        resource_data: dict[str, Any],
        change_type: ChangeType | str,
        snapshot_time: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> StateSnapshot:
        resource_type = ResourceType(resource_type).value
        change_type = ChangeType(change_type).value
        resource_id = str(resource_id)

        async with database_session(self.session_factory, session, "snapshot_append") as s:
            previous = await s.scalar(
                select(func.max(StateSnapshot.snapshot_time)).where(
                    StateSnapshot.resource_type == resource_type,
                    StateSnapshot.resource_id == resource_id,
                )
            )
            when = snapshot_time or utcnow()
            if previous is not None and when <= previous:
                when = previous + timedelta(microseconds=1)

            snapshot = StateSnapshot(
                snapshot_time=when,
                resource_type=resource_type,
                resource_id=resource_id,
                resource_data=resource_data,
                change_type=change_type,
            )
            s.add(snapshot)
            await s.flush()

        logger.debug(f"Snapshot {change_type} recorded for {resource_type}:{resource_id}")
        return snapshot

    async def get(self, snapshot_id: int, session: AsyncSession | None = None) -> StateSnapshot:
        async with database_session(self.session_factory, session, "snapshot_get") as s:
            snapshot = await s.get(StateSnapshot, snapshot_id)
        if snapshot is None:
            raise NotFoundError("state_snapshot", snapshot_id)
        return snapshot

    async def history(
        self,
        resource_type: ResourceType | str,
        resource_id: Any,
        after_id: int | None = None,
        limit: int = 100,
        session: AsyncSession | None = None,
    ) -> list[StateSnapshot]:
        """
        Chronological history of one resource.

        Pagination is keyset based: pass the id of the last snapshot of the
        previous page as ``after_id`` to continue where it stopped.
        """
        if limit < 1:
            raise ValidationError("limit must be positive", field="limit", value=limit)
        resource_type = ResourceType(resource_type).value
        resource_id = str(resource_id)

        async with database_session(self.session_factory, session, "snapshot_history") as s:
            query = select(StateSnapshot).where(
                StateSnapshot.resource_type == resource_type,
                StateSnapshot.resource_id == resource_id,
            )
            if after_id is not None:
                anchor = await s.get(StateSnapshot, after_id)
                if anchor is None:
                    raise NotFoundError("state_snapshot", after_id)
                query = query.where(
                    or_(
                        StateSnapshot.snapshot_time > anchor.snapshot_time,
                        and_(
                            StateSnapshot.snapshot_time == anchor.snapshot_time,
                            StateSnapshot.id > anchor.id,
                        ),
                    )
                )
            query = query.order_by(StateSnapshot.snapshot_time, StateSnapshot.id).limit(limit)
            result = await s.execute(query)
            return list(result.scalars().all())

    async def latest(
        self,
        resource_type: ResourceType | str,
        resource_id: Any,
        session: AsyncSession | None = None,
    ) -> StateSnapshot | None:
        async with database_session(self.session_factory, session, "snapshot_latest") as s:
            result = await s.execute(
                select(StateSnapshot)
                .where(
                    StateSnapshot.resource_type == ResourceType(resource_type).value,
                    StateSnapshot.resource_id == str(resource_id),
                )
                .order_by(StateSnapshot.snapshot_time.desc(), StateSnapshot.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    def _conditions(self, filters: dict[str, Any] | None) -> list:
        conditions = []
        for key, value in (filters or {}).items():
            if key not in _FILTERS:
                raise ValidationError(f"Unsupported snapshot filter: {key}", field=key)
            if value is None:
                continue
            if key == "resource_type":
                conditions.append(StateSnapshot.resource_type == ResourceType(value).value)
            elif key == "resource_id":
                conditions.append(StateSnapshot.resource_id == str(value))
            elif key == "change_type":
                conditions.append(StateSnapshot.change_type == ChangeType(value).value)
            elif key == "since":
                conditions.append(StateSnapshot.snapshot_time >= value)
            elif key == "until":
                conditions.append(StateSnapshot.snapshot_time <= value)
        return conditions

    async def list(
        self,
        filters: dict[str, Any] | None = None,
        page: PaginationParams | None = None,
        session: AsyncSession | None = None,
    ) -> list[StateSnapshot]:
        page = page or PaginationParams()
        async with database_session(self.session_factory, session, "snapshot_list") as s:
            result = await s.execute(
                select(StateSnapshot)
                .where(*self._conditions(filters))
                .order_by(StateSnapshot.snapshot_time.desc(), StateSnapshot.id.desc())
                .offset(page.offset)
                .limit(page.page_size)
            )
            return list(result.scalars().all())

    async def count(
        self, filters: dict[str, Any] | None = None, session: AsyncSession | None = None
    ) -> int:
        async with database_session(self.session_factory, session, "snapshot_count") as s:
            total = await s.scalar(
                select(func.count()).select_from(StateSnapshot).where(*self._conditions(filters))
            )
        return int(total or 0)

    async def change_statistics(
        self, since: datetime | None = None, session: AsyncSession | None = None
    ) -> dict[str, Any]:
        """Snapshot counts grouped by change type and by resource type."""
        conditions = [StateSnapshot.snapshot_time >= since] if since else []
        async with database_session(self.session_factory, session, "snapshot_statistics") as s:
            by_change = await s.execute(
                select(StateSnapshot.change_type, func.count())
                .where(*conditions)
                .group_by(StateSnapshot.change_type)
            )
            by_resource = await s.execute(
                select(StateSnapshot.resource_type, func.count())
                .where(*conditions)
                .group_by(StateSnapshot.resource_type)
            )
            last_time = await s.scalar(select(func.max(StateSnapshot.snapshot_time)).where(*conditions))

        by_change_type = {change: count for change, count in by_change.all()}
        return {
            "total": sum(by_change_type.values()),
            "by_change_type": by_change_type,
            "by_resource_type": {rtype: count for rtype, count in by_resource.all()},
            "last_snapshot_time": last_time.isoformat() if last_time else None,
        }

    async def purge_older_than(self, days: int, session: AsyncSession | None = None) -> int:
        """Explicit retention maintenance; the only operation that removes snapshots."""
        if days < 1:
            raise ValidationError("retention must be at least one day", field="days", value=days)
        cutoff = utcnow() - timedelta(days=days)
        async with database_session(self.session_factory, session, "snapshot_purge") as s:
            result = await s.execute(delete(StateSnapshot).where(StateSnapshot.snapshot_time < cutoff))
        removed = result.rowcount or 0
        logger.info(f"Purged {removed} snapshots older than {days} days")
        return removed

    async def update(self, *args: Any, **kwargs: Any) -> None:
        raise ConstraintError("State snapshots are immutable", constraint="append_only")

    async def delete(self, *args: Any, **kwargs: Any) -> None:
        raise ConstraintError("State snapshots cannot be deleted", constraint="append_only")
