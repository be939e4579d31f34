"""
Change Detection Service

Compares freshly discovered resources with persisted state, classifies the
difference and writes exactly one immutable snapshot per classification.
The compare-and-write step for a resource runs in a single transaction under
a lock; network I/O never happens while the lock is held.
"""

import asyncio
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel

from apps.backend.src.core.database import utcnow
from apps.backend.src.repositories import RepositoryRegistry
from apps.backend.src.schemas.common import ChangeType, ResourceType, TaskStatus
from apps.backend.src.schemas.sync import ChangeOutcome, ChangeResult
from apps.backend.src.services.normalization import apply_sticky, compute_digest, normalize
from apps.backend.src.utils.database_utils import database_session
from apps.backend.src.utils.diff_generator import DiffGenerator

logger = structlog.get_logger(__name__)

_SYNCED_TYPES = (
    ResourceType.NODE,
    ResourceType.VM,
    ResourceType.CONTAINER,
    ResourceType.STORAGE,
)

# Remote task states a local task may move to
_TASK_ADVANCES: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.PENDING: (TaskStatus.RUNNING, TaskStatus.OK, TaskStatus.ERROR),
    TaskStatus.RUNNING: (TaskStatus.OK, TaskStatus.ERROR),
    TaskStatus.TIMEOUT: (TaskStatus.OK, TaskStatus.ERROR),
}
_TASK_PROGRESS_FIELDS = ("status", "start_time", "end_time", "exit_status")


class ChangeDetectionService:
    """
    Classifies observed resource state against the store.

    Outcomes:
        created / discovered - no persisted row; baseline snapshot written
        updated              - normalized forms differ; snapshot carries the diff
        unchanged            - digests match; only last_seen is refreshed
        missing              - absent from a pass; missing count incremented
        deleted              - absent for ``grace_passes`` consecutive passes
    """

    def __init__(
        self,
        repositories: RepositoryRegistry,
        grace_passes: int = 2,
        lock: asyncio.Lock | None = None,
    ):
        if grace_passes < 1:
            raise ValueError("grace_passes must be at least 1")
        self.repositories = repositories
        self.session_factory = repositories.session_factory
        self.grace_passes = grace_passes
        self.diff_generator = DiffGenerator()
        self._lock = lock or asyncio.Lock()

    def _transaction(self, operation: str):
        return database_session(self.session_factory, None, operation)

    async def detect(
        self,
        resource: BaseModel,
        change_type: ChangeType = ChangeType.DISCOVERED,
        seen_at: datetime | None = None,
    ) -> ChangeResult:
        """
        Classify one observed resource and persist the outcome.

        Args:
            resource: Observed state as a NodeCreate, VMCreate, ContainerCreate or StorageCreate
            change_type: Classification for a resource with no persisted row
                (``created`` after a management action, ``discovered`` during sync)
            seen_at: Observation time, defaults to now

        Returns:
            ChangeResult describing the classification
        """
        resource_type = ResourceType(resource.kind)
        if resource_type not in _SYNCED_TYPES:
            raise ValueError(f"{resource_type.value} resources are not change-tracked")
        repo = self.repositories.for_type(resource_type)
        observed = resource.to_columns()
        resource_id = observed["id"]
        seen_at = seen_at or observed.get("last_seen") or utcnow()
        observed["last_seen"] = seen_at

        async with self._lock:
            async with self._transaction("change_detection") as session:
                existing = await repo.get(resource_id, session=session)

                if existing is None:
                    observed["config_digest"] = compute_digest(resource_type, observed)
                    await repo.create(observed, change_type=change_type, session=session)
                    outcome = (
                        ChangeOutcome.CREATED
                        if ChangeType(change_type) == ChangeType.CREATED
                        else ChangeOutcome.DISCOVERED
                    )
                    return await self._result(resource_type, resource_id, outcome, session=session)

                persisted = existing.to_dict()
                observed = apply_sticky(resource_type, observed, persisted)
                digest = compute_digest(resource_type, observed)

                if digest == existing.config_digest:
                    await repo.touch(resource_id, seen_at=seen_at, session=session)
                    return ChangeResult(
                        resource_type=resource_type,
                        resource_id=str(resource_id),
                        outcome=ChangeOutcome.UNCHANGED,
                    )

                diff = self.diff_generator.generate_field_diff(
                    normalize(resource_type, persisted), normalize(resource_type, observed)
                )
                if not diff:
                    # Digest was stale or absent; nothing tracked actually changed
                    await repo.touch(resource_id, seen_at=seen_at, config_digest=digest, session=session)
                    return ChangeResult(
                        resource_type=resource_type,
                        resource_id=str(resource_id),
                        outcome=ChangeOutcome.UNCHANGED,
                    )

                changes = {k: v for k, v in observed.items() if k != "id"}
                changes["config_digest"] = digest
                await repo.update(resource_id, changes, diff=diff, session=session)
                await repo.touch(resource_id, seen_at=seen_at, session=session)
                result = await self._result(
                    resource_type, resource_id, ChangeOutcome.UPDATED, diff=diff, session=session
                )

        logger.info(
            "Resource drift detected",
            resource_type=resource_type.value,
            resource_id=str(resource_id),
            fields=sorted(diff),
        )
        return result

    async def record_missing(
        self, resource_type: ResourceType | str, resource_id: Any
    ) -> ChangeResult | None:
        """
        Register one pass in which a known resource was absent.

        Returns None when the resource is no longer persisted.
        """
        resource_type = ResourceType(resource_type)
        repo = self.repositories.for_type(resource_type)

        async with self._lock:
            async with self._transaction("record_missing") as session:
                existing = await repo.get(resource_id, session=session)
                if existing is None:
                    return None

                count = (existing.missing_count or 0) + 1
                if count < self.grace_passes:
                    await repo.set_missing_count(resource_id, count, session=session)
                    logger.info(
                        "Resource missing from discovery",
                        resource_type=resource_type.value,
                        resource_id=str(resource_id),
                        missing_count=count,
                        grace_passes=self.grace_passes,
                    )
                    return ChangeResult(
                        resource_type=resource_type,
                        resource_id=str(resource_id),
                        outcome=ChangeOutcome.MISSING,
                        missing_count=count,
                    )

                await repo.delete(
                    resource_id, cascade=resource_type == ResourceType.NODE, session=session
                )
                result = await self._result(
                    resource_type, resource_id, ChangeOutcome.DELETED, session=session
                )

        logger.info(
            "Resource deleted after grace window",
            resource_type=resource_type.value,
            resource_id=str(resource_id),
            grace_passes=self.grace_passes,
        )
        return result

    async def confirm_deleted(
        self, resource_type: ResourceType | str, resource_id: Any
    ) -> ChangeResult | None:
        """Classify a resource as deleted immediately (its removal was observed directly)."""
        resource_type = ResourceType(resource_type)
        repo = self.repositories.for_type(resource_type)

        async with self._lock:
            async with self._transaction("confirm_deleted") as session:
                if await repo.get(resource_id, session=session) is None:
                    return None
                await repo.delete(
                    resource_id, cascade=resource_type == ResourceType.NODE, session=session
                )
                return await self._result(
                    resource_type, resource_id, ChangeOutcome.DELETED, session=session
                )

    async def mark_seen(
        self,
        resource_type: ResourceType | str,
        resource_id: Any,
        seen_at: datetime | None = None,
    ) -> bool:
        """
        Reset the grace window of a resource that was listed but not fully fetched.

        Returns False when the resource is not persisted yet.
        """
        repo = self.repositories.for_type(resource_type)
        async with self._lock:
            async with self._transaction("mark_seen") as session:
                if not await repo.exists(resource_id, session=session):
                    return False
                await repo.touch(resource_id, seen_at=seen_at, session=session)
        return True

    async def reconcile_task(self, observed: BaseModel) -> ChangeResult:
        """
        Merge one entry of the remote task list into the task table.

        Unknown tasks are recorded as discovered. A known task only moves
        forward: pending to running or finished, running or timed out to
        finished. Finished tasks are never rewritten.
        """
        repo = self.repositories.tasks
        upid = observed.upid
        remote_status = TaskStatus(observed.status)

        async with self._lock:
            async with self._transaction("reconcile_task") as session:
                existing = await repo.get(upid, session=session)
                if existing is None:
                    await repo.create(observed, change_type=ChangeType.DISCOVERED, session=session)
                    return await self._result(
                        ResourceType.TASK, upid, ChangeOutcome.DISCOVERED, session=session
                    )

                if remote_status not in _TASK_ADVANCES.get(TaskStatus(existing.status), ()):
                    return ChangeResult(
                        resource_type=ResourceType.TASK,
                        resource_id=upid,
                        outcome=ChangeOutcome.UNCHANGED,
                    )

                before = {field: existing.to_dict()[field] for field in _TASK_PROGRESS_FIELDS}
                changes: dict[str, Any] = {"status": remote_status}
                if observed.end_time is not None:
                    changes["end_time"] = observed.end_time
                if observed.exit_status is not None:
                    changes["exit_status"] = observed.exit_status
                if existing.start_time is None and observed.start_time is not None:
                    changes["start_time"] = observed.start_time
                task = await repo.update(upid, changes, session=session)
                after = {field: task.to_dict()[field] for field in _TASK_PROGRESS_FIELDS}
                diff = self.diff_generator.generate_field_diff(before, after)
                result = await self._result(
                    ResourceType.TASK, upid, ChangeOutcome.UPDATED, diff=diff, session=session
                )

        logger.info(
            "Task reconciled with remote state",
            upid=upid,
            previous_status=before["status"],
            status=remote_status.value,
        )
        return result

    async def _result(
        self,
        resource_type: ResourceType,
        resource_id: Any,
        outcome: ChangeOutcome,
        diff: dict[str, Any] | None = None,
        session: Any = None,
    ) -> ChangeResult:
        snapshot = await self.repositories.snapshots.latest(resource_type, resource_id, session=session)
        return ChangeResult(
            resource_type=resource_type,
            resource_id=str(resource_id),
            outcome=outcome,
            diff=diff or {},
            snapshot_id=snapshot.id if snapshot else None,
        )
