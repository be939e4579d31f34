"""
Schemas for asynchronous operations submitted to the hypervisor.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from apps.backend.src.schemas.common import ResourceType, TaskStatus


class OperationType(str, Enum):
    """Lifecycle operations that run as remote tasks"""

    CREATE = "create"
    START = "start"
    STOP = "stop"
    SHUTDOWN = "shutdown"
    REBOOT = "reboot"
    DELETE = "delete"


OPERABLE_RESOURCE_TYPES = (ResourceType.VM, ResourceType.CONTAINER)


class OperationRequest(BaseModel):
    """One management command to submit"""

    operation: OperationType
    resource_type: ResourceType
    node: str = Field(..., min_length=1)
    resource_id: int | None = Field(None, ge=1)
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("resource_type")
    @classmethod
    def validate_resource_type(cls, v: ResourceType) -> ResourceType:
        if v not in OPERABLE_RESOURCE_TYPES:
            raise ValueError("operations are only supported for vm and container resources")
        return v

    @model_validator(mode="after")
    def require_vmid(self) -> "OperationRequest":
        if self.resource_id is None:
            vmid = self.params.get("vmid")
            if vmid is None:
                raise ValueError("resource_id is required")
            self.resource_id = int(vmid)
        return self


class UPIDInfo(BaseModel):
    """Fields encoded in a UPID (``UPID:node:pid:pstart:starttime:type:id:user:``)"""

    node: str
    type: str
    id: str | None = None
    user: str | None = None
    start_time: datetime | None = None

    @classmethod
    def parse(cls, upid: str) -> "UPIDInfo":
        parts = upid.split(":")
        if len(parts) < 8 or parts[0] != "UPID" or not parts[1]:
            raise ValueError(f"malformed UPID: {upid}")
        start_time = None
        try:
            start_time = datetime.fromtimestamp(int(parts[4], 16), UTC)
        except ValueError:
            pass
        return cls(
            node=parts[1],
            type=parts[5],
            id=parts[6] or None,
            user=parts[7] or None,
            start_time=start_time,
        )


class TaskHandle(BaseModel):
    """Caller-side reference to a tracked remote task"""

    upid: str
    node: str
    type: str
    status: TaskStatus = TaskStatus.PENDING
    operation: OperationType | None = None
    resource_type: ResourceType | None = None
    resource_id: str | None = None
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return TaskStatus(self.status).is_terminal


class TaskResult(BaseModel):
    """Final (or locally timed-out) outcome of a remote task"""

    upid: str
    status: TaskStatus
    exit_status: str | None = None
    log: list[str] = Field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None
    resource_type: ResourceType | None = None
    resource_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.OK

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


# Task type names used by the hypervisor for each guest operation
TASK_TYPES: dict[tuple[ResourceType, OperationType], str] = {
    (ResourceType.VM, OperationType.CREATE): "qmcreate",
    (ResourceType.VM, OperationType.START): "qmstart",
    (ResourceType.VM, OperationType.STOP): "qmstop",
    (ResourceType.VM, OperationType.SHUTDOWN): "qmshutdown",
    (ResourceType.VM, OperationType.REBOOT): "qmreboot",
    (ResourceType.VM, OperationType.DELETE): "qmdestroy",
    (ResourceType.CONTAINER, OperationType.CREATE): "vzcreate",
    (ResourceType.CONTAINER, OperationType.START): "vzstart",
    (ResourceType.CONTAINER, OperationType.STOP): "vzstop",
    (ResourceType.CONTAINER, OperationType.SHUTDOWN): "vzshutdown",
    (ResourceType.CONTAINER, OperationType.REBOOT): "vzreboot",
    (ResourceType.CONTAINER, OperationType.DELETE): "vzdestroy",
}
_OPERATIONS_BY_TASK_TYPE = {task_type: key for key, task_type in TASK_TYPES.items()}


def task_target(task_type: str | None) -> tuple[ResourceType, OperationType] | None:
    """Guest kind and operation behind a task type, None for other tasks (backups, ...)."""
    if task_type is None:
        return None
    return _OPERATIONS_BY_TASK_TYPE.get(task_type)


def map_remote_status(status: str | None, exit_status: str | None) -> TaskStatus:
    if status == "running":
        return TaskStatus.RUNNING
    if exit_status == "OK":
        return TaskStatus.OK
    return TaskStatus.ERROR
