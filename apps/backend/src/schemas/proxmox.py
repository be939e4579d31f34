"""
Typed payloads returned by the hypervisor management API.

Responses are loosely typed on the wire: numeric flags arrive as 0/1, optional
keys are simply absent and new releases add fields. Every model ignores
unknown keys and maps explicitly into the repository input schemas.
"""

from datetime import UTC, datetime
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from apps.backend.src.schemas.common import GuestStatus, NodeStatus, TaskStatus
from apps.backend.src.schemas.resources import (
    ContainerCreate,
    NodeCreate,
    StorageCreate,
    TaskCreate,
    VMCreate,
)
from apps.backend.src.schemas.task import map_remote_status, task_target

_VERSION_RE = re.compile(r"pve-manager/([^/\s]+)")


def _clamp_ratio(value: float | None) -> float | None:
    if value is None:
        return None
    return min(max(float(value), 0.0), 1.0)


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class APIPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ApiNode(APIPayload):
    """Entry of the node listing (``GET /nodes``)"""

    node: str
    status: str = "unknown"
    cpu: float | None = None
    maxcpu: int | None = None
    mem: int | None = None
    maxmem: int | None = None
    uptime: int | None = None

    @property
    def online(self) -> bool:
        return self.status == "online"


class ApiCpuInfo(APIPayload):
    cpus: int | None = None


class ApiMemoryInfo(APIPayload):
    total: int | None = None
    used: int | None = None


class ApiNodeStatus(APIPayload):
    """Node detail (``GET /nodes/{node}/status``)"""

    pveversion: str | None = None
    uptime: int | None = None
    cpu: float | None = None
    cpuinfo: ApiCpuInfo | None = None
    memory: ApiMemoryInfo | None = None

    @property
    def version(self) -> str | None:
        if not self.pveversion:
            return None
        match = _VERSION_RE.search(self.pveversion)
        return match.group(1) if match else self.pveversion


def build_node(entry: ApiNode, status: ApiNodeStatus | None, seen_at: datetime) -> NodeCreate:
    """Map a node listing entry plus optional detail into a NodeCreate."""
    cpu_max = entry.maxcpu
    if cpu_max is None and status and status.cpuinfo:
        cpu_max = status.cpuinfo.cpus
    memory_max = entry.maxmem
    if memory_max is None and status and status.memory:
        memory_max = status.memory.total

    return NodeCreate(
        id=entry.node,
        status=NodeStatus.ONLINE if entry.online else NodeStatus.OFFLINE,
        cpu_usage=_clamp_ratio(entry.cpu),
        cpu_max=cpu_max or None,
        memory_usage=entry.mem,
        memory_max=memory_max,
        uptime=entry.uptime if entry.uptime is not None else (status.uptime if status else None),
        version=status.version if status else None,
        last_seen=seen_at,
    )


class ApiGuest(APIPayload):
    """Entry of a guest listing (``GET /nodes/{node}/qemu`` or ``/lxc``)"""

    vmid: int
    name: str | None = None
    status: str = "stopped"
    template: bool = False
    cpu: float | None = None
    cpus: int | None = None
    mem: int | None = None
    maxmem: int | None = None
    disk: int | None = None
    maxdisk: int | None = None
    netin: int | None = None
    netout: int | None = None
    uptime: int | None = None
    pid: int | None = None
    lock: str | None = None
    swap: int | None = None
    maxswap: int | None = None


class ApiHAState(APIPayload):
    managed: bool = False


class ApiGuestStatus(APIPayload):
    """Guest detail (``GET .../{vmid}/status/current``)"""

    status: str = "stopped"
    qmpstatus: str | None = None
    ha: ApiHAState | None = None
    pid: int | None = None
    lock: str | None = None

    @property
    def guest_status(self) -> GuestStatus:
        if self.qmpstatus in ("paused", "suspended", "prelaunch"):
            return GuestStatus.SUSPENDED
        if self.status == "running":
            return GuestStatus.RUNNING
        if self.status in ("paused", "suspended"):
            return GuestStatus.SUSPENDED
        return GuestStatus.STOPPED


def _guest_fields(
    node: str,
    entry: ApiGuest,
    status: ApiGuestStatus,
    config: dict[str, Any],
    seen_at: datetime,
) -> dict[str, Any]:
    cores = entry.cpus
    if cores is None and config.get("cores") is not None:
        cores = int(config["cores"])
    lock = status.lock if status.lock is not None else entry.lock
    return {
        "id": entry.vmid,
        "node_id": node,
        "name": entry.name or config.get("name") or config.get("hostname"),
        "status": status.guest_status,
        "template": entry.template or bool(int(config.get("template", 0) or 0)),
        "cpu_cores": cores or None,
        "cpu_usage": _clamp_ratio(entry.cpu),
        "memory_bytes": entry.maxmem,
        "memory_usage": entry.mem,
        "disk_size": entry.maxdisk,
        "disk_usage": entry.disk,
        "network_in": entry.netin,
        "network_out": entry.netout,
        "uptime": entry.uptime,
        "ha_managed": bool(status.ha and status.ha.managed),
        "lock_status": lock or None,
        "config": config,
        "last_seen": seen_at,
    }


def build_vm(
    node: str,
    entry: ApiGuest,
    status: ApiGuestStatus,
    config: dict[str, Any],
    seen_at: datetime,
) -> VMCreate:
    fields = _guest_fields(node, entry, status, config, seen_at)
    fields["pid"] = status.pid if status.pid is not None else entry.pid
    return VMCreate(**fields)


def build_container(
    node: str,
    entry: ApiGuest,
    status: ApiGuestStatus,
    config: dict[str, Any],
    seen_at: datetime,
) -> ContainerCreate:
    fields = _guest_fields(node, entry, status, config, seen_at)
    fields.update(
        {
            "hostname": config.get("hostname"),
            "swap_bytes": entry.maxswap,
            "swap_usage": entry.swap,
            "os_template": config.get("ostemplate") or config.get("ostype"),
        }
    )
    return ContainerCreate(**fields)


class ApiStorageConfig(APIPayload):
    """Cluster-wide storage definition (``GET /storage``)"""

    storage: str
    type: str
    content: str | None = None
    path: str | None = None
    shared: bool = False
    disable: bool = False
    nodes: str | None = None
    digest: str | None = None

    def config(self) -> dict[str, Any]:
        return self.model_dump(exclude={"storage", "digest"}, exclude_none=True)


class ApiNodeStorage(APIPayload):
    """Per-node storage status (``GET /nodes/{node}/storage``)"""

    storage: str
    type: str
    content: str | None = None
    enabled: bool = True
    active: bool = True
    shared: bool = False
    total: int | None = None
    used: int | None = None
    avail: int | None = None


def build_storage(
    storage_id: str,
    reports: dict[str, ApiNodeStorage],
    definition: ApiStorageConfig | None,
    seen_at: datetime,
    extra_nodes: list[str] | None = None,
) -> StorageCreate:
    """
    Merge the per-node reports of one storage pool into a StorageCreate.

    Descriptive fields come from the first reporting node in name order.
    Capacity comes from the largest report: node-local pools sharing an id
    may differ in size per node, and the largest one does not depend on the
    order in which nodes finished. ``extra_nodes`` are nodes that hold the
    pool but were not queried in this pass.
    """
    first = reports[sorted(reports)[0]]
    largest = max(
        (reports[node] for node in sorted(reports)), key=lambda report: report.total or 0
    )
    content = definition.content if definition and definition.content else first.content
    return StorageCreate(
        id=storage_id,
        type=definition.type if definition else first.type,
        content_types=_split_list(content),
        enabled=(not definition.disable) if definition else first.enabled,
        shared=definition.shared if definition else first.shared,
        total_bytes=largest.total,
        used_bytes=largest.used,
        available_bytes=largest.avail,
        path=definition.path if definition else None,
        accessible_nodes=sorted(set(reports) | set(extra_nodes or [])),
        config=definition.config() if definition else None,
        last_seen=seen_at,
    )


class ApiTaskStatus(APIPayload):
    """Task status (``GET /nodes/{node}/tasks/{upid}/status``)"""

    upid: str | None = None
    node: str | None = None
    status: str
    exitstatus: str | None = None
    type: str | None = None
    id: str | None = None
    user: str | None = None
    starttime: int | None = None

    @property
    def start_time(self) -> datetime | None:
        if self.starttime is None:
            return None
        return datetime.fromtimestamp(self.starttime, UTC)


class ApiTaskListEntry(APIPayload):
    """Entry of the node task list (``GET /nodes/{node}/tasks``)

    Finished tasks carry ``endtime`` and their exit status in ``status``.
    """

    upid: str
    node: str
    type: str
    id: str | None = None
    user: str | None = None
    starttime: int | None = None
    endtime: int | None = None
    status: str | None = None

    @property
    def task_status(self) -> TaskStatus:
        if self.endtime is None:
            return TaskStatus.RUNNING
        return map_remote_status("stopped", self.status)


def _timestamp(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value is not None else None


def build_task(entry: ApiTaskListEntry) -> TaskCreate:
    target = task_target(entry.type)
    return TaskCreate(
        upid=entry.upid,
        node_id=entry.node,
        type=entry.type,
        status=entry.task_status,
        resource_type=target[0] if target else None,
        resource_id=entry.id if target else None,
        user=entry.user,
        start_time=_timestamp(entry.starttime),
        end_time=_timestamp(entry.endtime),
        exit_status=entry.status if entry.endtime is not None else None,
    )


class ApiTaskLogLine(APIPayload):
    n: int
    t: str = Field(default="")
