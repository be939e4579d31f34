"""
Repository input schemas for the synchronized resource types.

The ``*Create`` models double as the typed, discriminated representation of a
freshly discovered resource: each carries a ``kind`` literal so a mixed
sequence of observations can be validated as one union.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from apps.backend.src.schemas.common import (
    GuestStatus,
    NodeStatus,
    ResourceType,
    StorageType,
    TaskStatus,
)


class ResourceInput(BaseModel):
    """Shared configuration for repository inputs"""

    model_config = ConfigDict(use_enum_values=True, extra="forbid")

    def to_columns(self, exclude_unset: bool = False) -> dict[str, Any]:
        """Column values for the ORM model, without the discriminator."""
        return self.model_dump(exclude={"kind"}, exclude_unset=exclude_unset)


def _sorted_unique(values: list[str] | None) -> list[str]:
    return sorted({v for v in (values or []) if v})


# Nodes


class NodeCreate(ResourceInput):
    kind: Literal["node"] = "node"

    id: str = Field(..., min_length=1, max_length=255, description="Cluster-unique node name")
    status: NodeStatus = Field(default=NodeStatus.ONLINE)
    cpu_usage: float | None = Field(None, ge=0, le=1)
    cpu_max: int | None = Field(None, ge=1)
    memory_usage: int | None = Field(None, ge=0)
    memory_max: int | None = Field(None, ge=0)
    uptime: int | None = Field(None, ge=0)
    version: str | None = Field(None, max_length=64)
    config_digest: str | None = None
    last_seen: datetime | None = None


class NodeUpdate(ResourceInput):
    status: NodeStatus | None = None
    cpu_usage: float | None = Field(None, ge=0, le=1)
    cpu_max: int | None = Field(None, ge=1)
    memory_usage: int | None = Field(None, ge=0)
    memory_max: int | None = Field(None, ge=0)
    uptime: int | None = Field(None, ge=0)
    version: str | None = Field(None, max_length=64)
    config_digest: str | None = None
    last_seen: datetime | None = None


# Guests


class GuestFields(ResourceInput):
    """Fields shared by virtual machine and container inputs"""

    node_id: str = Field(..., min_length=1, max_length=255)
    name: str | None = Field(None, max_length=255)
    status: GuestStatus
    template: bool = False
    cpu_cores: int | None = Field(None, ge=1)
    cpu_usage: float | None = Field(None, ge=0, le=1)
    memory_bytes: int | None = Field(None, ge=0)
    memory_usage: int | None = Field(None, ge=0)
    disk_size: int | None = Field(None, ge=0)
    disk_usage: int | None = Field(None, ge=0)
    network_in: int | None = Field(None, ge=0)
    network_out: int | None = Field(None, ge=0)
    uptime: int | None = Field(None, ge=0)
    ha_managed: bool = False
    lock_status: str | None = Field(None, max_length=64)
    config: dict[str, Any] | None = None
    config_digest: str | None = None
    last_seen: datetime | None = None


class GuestUpdateFields(ResourceInput):
    node_id: str | None = Field(None, min_length=1, max_length=255)
    name: str | None = Field(None, max_length=255)
    status: GuestStatus | None = None
    template: bool | None = None
    cpu_cores: int | None = Field(None, ge=1)
    cpu_usage: float | None = Field(None, ge=0, le=1)
    memory_bytes: int | None = Field(None, ge=0)
    memory_usage: int | None = Field(None, ge=0)
    disk_size: int | None = Field(None, ge=0)
    disk_usage: int | None = Field(None, ge=0)
    network_in: int | None = Field(None, ge=0)
    network_out: int | None = Field(None, ge=0)
    uptime: int | None = Field(None, ge=0)
    ha_managed: bool | None = None
    lock_status: str | None = Field(None, max_length=64)
    config: dict[str, Any] | None = None
    config_digest: str | None = None
    last_seen: datetime | None = None


class VMCreate(GuestFields):
    kind: Literal["vm"] = "vm"

    id: int = Field(..., ge=1, description="Cluster-unique vmid")
    pid: int | None = Field(None, ge=0)


class VMUpdate(GuestUpdateFields):
    pid: int | None = Field(None, ge=0)


class ContainerCreate(GuestFields):
    kind: Literal["container"] = "container"

    id: int = Field(..., ge=1, description="Cluster-unique vmid")
    hostname: str | None = Field(None, max_length=255)
    swap_bytes: int | None = Field(None, ge=0)
    swap_usage: int | None = Field(None, ge=0)
    os_template: str | None = Field(None, max_length=255)


class ContainerUpdate(GuestUpdateFields):
    hostname: str | None = Field(None, max_length=255)
    swap_bytes: int | None = Field(None, ge=0)
    swap_usage: int | None = Field(None, ge=0)
    os_template: str | None = Field(None, max_length=255)


# Storage


class StorageCreate(ResourceInput):
    kind: Literal["storage"] = "storage"

    id: str = Field(..., min_length=1, max_length=255)
    type: StorageType
    content_types: list[str] = Field(default_factory=list)
    enabled: bool = True
    shared: bool = False
    total_bytes: int | None = Field(None, ge=0)
    used_bytes: int | None = Field(None, ge=0)
    available_bytes: int | None = Field(None, ge=0)
    path: str | None = Field(None, max_length=1024)
    accessible_nodes: list[str] = Field(default_factory=list)
    config: dict[str, Any] | None = None
    config_digest: str | None = None
    last_seen: datetime | None = None

    @field_validator("content_types", "accessible_nodes")
    @classmethod
    def normalize_sets(cls, v: list[str]) -> list[str]:
        return _sorted_unique(v)


class StorageUpdate(ResourceInput):
    type: StorageType | None = None
    content_types: list[str] | None = None
    enabled: bool | None = None
    shared: bool | None = None
    total_bytes: int | None = Field(None, ge=0)
    used_bytes: int | None = Field(None, ge=0)
    available_bytes: int | None = Field(None, ge=0)
    path: str | None = Field(None, max_length=1024)
    accessible_nodes: list[str] | None = None
    config: dict[str, Any] | None = None
    config_digest: str | None = None
    last_seen: datetime | None = None

    @field_validator("content_types", "accessible_nodes")
    @classmethod
    def normalize_sets(cls, v: list[str] | None) -> list[str] | None:
        return None if v is None else _sorted_unique(v)


# Tasks


class TaskCreate(ResourceInput):
    upid: str = Field(..., min_length=1, max_length=512)
    node_id: str = Field(..., min_length=1, max_length=255)
    type: str = Field(..., min_length=1, max_length=64)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    resource_type: ResourceType | None = None
    resource_id: str | None = Field(None, max_length=64)
    user: str | None = Field(None, max_length=128)
    start_time: datetime | None = None
    end_time: datetime | None = None
    exit_status: str | None = Field(None, max_length=512)
    log: list[str] = Field(default_factory=list)


class TaskUpdate(ResourceInput):
    status: TaskStatus | None = None
    user: str | None = Field(None, max_length=128)
    start_time: datetime | None = None
    end_time: datetime | None = None
    exit_status: str | None = Field(None, max_length=512)
    log: list[str] | None = None


DiscoveredResource = Annotated[
    Union[NodeCreate, VMCreate, ContainerCreate, StorageCreate],
    Field(discriminator="kind"),
]
