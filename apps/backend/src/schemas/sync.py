"""
Schemas describing a synchronization pass and its outcome.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from apps.backend.src.schemas.common import ResourceType


class SyncStatus(str, Enum):
    """Overall outcome of a sync pass"""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChangeOutcome(str, Enum):
    """Per-resource result of change detection"""

    CREATED = "created"
    DISCOVERED = "discovered"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    MISSING = "missing"


class SyncScope(BaseModel):
    """Optional narrowing of a sync pass; an empty scope means the full cluster"""

    resource_type: ResourceType | None = None
    resource_id: str | None = None
    node: str | None = None

    @model_validator(mode="after")
    def check_scope(self) -> "SyncScope":
        if self.resource_id is not None and self.resource_type is None:
            raise ValueError("resource_id requires resource_type")
        if self.resource_type == ResourceType.TASK:
            raise ValueError("tasks are tracked by the task monitor, not synchronized")
        return self

    @property
    def is_full(self) -> bool:
        return self.resource_type is None and self.resource_id is None and self.node is None


class SyncError(BaseModel):
    """Failure confined to a single resource"""

    resource_type: ResourceType
    resource_id: str
    node: str | None = None
    message: str
    error_code: str = "SYNC_ERROR"
    attempts: int = 1


class NodeError(BaseModel):
    """Failure that prevented enumerating one node"""

    node: str
    message: str
    error_code: str = "NODE_ERROR"


class ChangeResult(BaseModel):
    """What change detection decided for one resource"""

    resource_type: ResourceType
    resource_id: str
    outcome: ChangeOutcome
    diff: dict[str, Any] = Field(default_factory=dict)
    snapshot_id: int | None = None
    missing_count: int = 0


class SyncReport(BaseModel):
    """Aggregate result of one sync pass"""

    sync_id: str = Field(default_factory=lambda: uuid4().hex)
    scope: SyncScope = Field(default_factory=SyncScope)
    status: SyncStatus = SyncStatus.RUNNING
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    # created counts both explicit creations and first-time discoveries
    created: int = 0
    discovered: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0

    errors: list[SyncError] = Field(default_factory=list)
    node_errors: list[NodeError] = Field(default_factory=list)
    by_type: dict[str, dict[str, int]] = Field(default_factory=dict)

    def record(self, result: ChangeResult) -> None:
        outcome = result.outcome
        if outcome in (ChangeOutcome.CREATED, ChangeOutcome.DISCOVERED):
            self.created += 1
            if outcome == ChangeOutcome.DISCOVERED:
                self.discovered += 1
        elif outcome == ChangeOutcome.UPDATED:
            self.updated += 1
        elif outcome == ChangeOutcome.DELETED:
            self.deleted += 1
        elif outcome == ChangeOutcome.UNCHANGED:
            self.unchanged += 1

        bucket = self.by_type.setdefault(ResourceType(result.resource_type).value, {})
        bucket[outcome.value] = bucket.get(outcome.value, 0) + 1

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def exit_code(self) -> int:
        """Process exit code: 0 success, 1 partial or cancelled, 2 failed."""
        if self.status == SyncStatus.SUCCESS:
            return 0
        if self.status in (SyncStatus.PARTIAL, SyncStatus.CANCELLED):
            return 1
        return 2

    def summary(self) -> dict[str, Any]:
        return {
            "sync_id": self.sync_id,
            "status": self.status.value,
            "created": self.created,
            "discovered": self.discovered,
            "updated": self.updated,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
            "errors": len(self.errors),
            "node_errors": len(self.node_errors),
            "duration_seconds": self.duration_seconds,
        }
