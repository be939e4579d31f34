"""
Repository for asynchronous remote tasks.
"""

from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy import delete as sql_delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apps.backend.src.core.database import utcnow
from apps.backend.src.core.exceptions import ConstraintError, ValidationError
from apps.backend.src.models.node import Node
from apps.backend.src.models.task import Task
from apps.backend.src.repositories.base import BaseRepository
from apps.backend.src.schemas.common import ResourceType, TaskStatus
from apps.backend.src.schemas.resources import TaskCreate, TaskUpdate

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.RUNNING.value)
FINISHED_STATUSES = (TaskStatus.OK.value, TaskStatus.ERROR.value, TaskStatus.TIMEOUT.value)


class TaskRepository(BaseRepository):
    model = Task
    resource_type = ResourceType.TASK
    create_schema = TaskCreate
    update_schema = TaskUpdate
    id_field = "upid"
    filter_fields = ("node_id", "status", "type", "resource_type", "resource_id", "user")

    async def _check_create(self, payload: Any, session: AsyncSession) -> None:
        if await session.get(Node, payload.node_id) is None:
            raise ConstraintError(
                f"Node {payload.node_id} does not exist",
                constraint="foreign_key",
                details={"node_id": payload.node_id},
            )

    async def list_by_status(
        self, status: TaskStatus | str, session: AsyncSession | None = None
    ) -> list[Task]:
        return await self.list({"status": TaskStatus(status)}, session=session)

    async def list_by_resource(
        self,
        resource_type: ResourceType | str,
        resource_id: Any,
        session: AsyncSession | None = None,
    ) -> list[Task]:
        async with self._session(session, "list_by_resource") as s:
            result = await s.execute(
                select(Task)
                .where(
                    Task.resource_type == ResourceType(resource_type).value,
                    Task.resource_id == str(resource_id),
                )
                .order_by(Task.created_at, Task.upid)
            )
            return list(result.scalars().all())

    async def list_active(self, session: AsyncSession | None = None) -> list[Task]:
        """Tasks still pending or running."""
        return await self.list({"status": list(ACTIVE_STATUSES)}, session=session)

    async def append_log(
        self, upid: str, lines: list[str], session: AsyncSession | None = None
    ) -> Task:
        async with self._session(session, "append_log") as s:
            task = await self.find_by_id(upid, session=s)
            # Reassign so the JSON column is flagged dirty
            task.log = list(task.log or []) + list(lines)
            await s.flush()
        return task

    async def statistics(
        self, session: AsyncSession | None = None, now: datetime | None = None
    ) -> dict[str, Any]:
        """Task counts by outcome and type, mean duration and recent activity."""
        now = now or utcnow()
        async with self._session(session, "statistics") as s:
            by_status = dict((await s.execute(select(Task.status, func.count()).group_by(Task.status))).all())
            by_type = await s.execute(select(Task.type, func.count()).group_by(Task.type).order_by(Task.type))
            recent = await s.scalar(
                select(func.count()).select_from(Task).where(Task.created_at >= now - timedelta(days=1))
            )
            # Durations in Python; date arithmetic differs between dialects
            spans = await s.execute(
                select(Task.start_time, Task.end_time).where(
                    Task.status.in_((TaskStatus.OK.value, TaskStatus.ERROR.value)),
                    Task.start_time.is_not(None),
                    Task.end_time.is_not(None),
                )
            )
            durations = [(end - start).total_seconds() for start, end in spans.all()]

        def count(*statuses: TaskStatus) -> int:
            return sum(int(by_status.get(status.value, 0)) for status in statuses)

        return {
            "total": sum(int(n) for n in by_status.values()),
            "active": count(TaskStatus.PENDING, TaskStatus.RUNNING),
            "completed": count(TaskStatus.OK),
            "failed": count(TaskStatus.ERROR),
            "timed_out": count(TaskStatus.TIMEOUT),
            "avg_duration_seconds": round(sum(durations) / len(durations), 3) if durations else None,
            "by_type": {task_type: n for task_type, n in by_type.all()},
            "recent_24h": int(recent or 0),
        }

    async def purge_finished(self, days: int, session: AsyncSession | None = None) -> int:
        """Retention maintenance: drop finished tasks that ended more than ``days`` ago.

        Active tasks are never removed. Snapshots of purged tasks stay in the
        change log until its own retention removes them.
        """
        if days < 1:
            raise ValidationError("retention must be at least one day", field="days", value=days)
        cutoff = utcnow() - timedelta(days=days)
        async with self._session(session, "purge_finished") as s:
            result = await s.execute(
                sql_delete(Task).where(Task.status.in_(FINISHED_STATUSES), Task.end_time < cutoff)
            )
        removed = result.rowcount or 0
        logger.info(f"Purged {removed} finished tasks older than {days} days")
        return removed
