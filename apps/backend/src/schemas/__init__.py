"""
Pydantic schemas for repository inputs, hypervisor payloads, sync reports and tasks.
"""

from .common import (
    ChangeType,
    GuestStatus,
    NodeStatus,
    PaginationParams,
    ResourceType,
    StorageType,
    TaskStatus,
)
from .resources import (
    ContainerCreate,
    ContainerUpdate,
    DiscoveredResource,
    NodeCreate,
    NodeUpdate,
    StorageCreate,
    StorageUpdate,
    TaskCreate,
    TaskUpdate,
    VMCreate,
    VMUpdate,
)
from .sync import (
    ChangeOutcome,
    ChangeResult,
    NodeError,
    SyncError,
    SyncReport,
    SyncScope,
    SyncStatus,
)
from .task import OperationRequest, OperationType, TaskHandle, TaskResult, UPIDInfo

__all__ = [
    "ChangeType",
    "GuestStatus",
    "NodeStatus",
    "PaginationParams",
    "ResourceType",
    "StorageType",
    "TaskStatus",
    "NodeCreate",
    "NodeUpdate",
    "VMCreate",
    "VMUpdate",
    "ContainerCreate",
    "ContainerUpdate",
    "StorageCreate",
    "StorageUpdate",
    "TaskCreate",
    "TaskUpdate",
    "DiscoveredResource",
    "ChangeOutcome",
    "ChangeResult",
    "NodeError",
    "SyncError",
    "SyncReport",
    "SyncScope",
    "SyncStatus",
    "OperationRequest",
    "OperationType",
    "TaskHandle",
    "TaskResult",
    "UPIDInfo",
]
