"""
Shared fixtures: a throwaway SQLite state store and an in-memory hypervisor.
"""

import asyncio
from datetime import UTC, datetime
import itertools
import logging
from typing import Any

import pytest
import structlog

from apps.backend.src.core.database import (
    create_async_database_engine,
    create_async_session_factory,
    create_schema,
)
from apps.backend.src.core.logging import set_sync_id
from apps.backend.src.repositories import RepositoryRegistry
from apps.backend.src.schemas.common import ResourceType
from apps.backend.src.schemas.proxmox import (
    ApiGuest,
    ApiGuestStatus,
    ApiNode,
    ApiNodeStatus,
    ApiNodeStorage,
    ApiStorageConfig,
    ApiTaskListEntry,
    ApiTaskStatus,
)
from apps.backend.src.schemas.task import TASK_TYPES, OperationType
from apps.backend.src.services.change_detection import ChangeDetectionService
from apps.backend.src.services.sync_service import SyncOrchestrator
from apps.backend.src.services.task_monitor import TaskMonitor

MIB = 1024 * 1024
GIB = 1024 * MIB


class FakeHypervisor:
    """
    In-memory stand-in for the management API.

    Failures are injected per method (optionally per node) with ``fail``;
    ``block`` parks a method on an event so tests can act mid-sync. Task
    status is scripted per UPID: each poll consumes one entry, the last one
    repeats. Completing a task applies its effect on the fake cluster. The
    node task list shows submitted tasks in their current scripted state plus
    anything placed in ``remote_tasks``.
    """

    def __init__(self):
        self.nodes: dict[str, dict[str, Any]] = {}
        self.versions: dict[str, str | None] = {}
        self.guests: dict[tuple[str, ResourceType], dict[int, dict[str, Any]]] = {}
        self.guest_status: dict[int, dict[str, Any]] = {}
        self.guest_config: dict[int, dict[str, Any]] = {}
        self.storage_config: dict[str, dict[str, Any]] = {}
        self.node_storage: dict[str, dict[str, dict[str, Any]]] = {}

        self.failures: dict[tuple[str, str | None], dict[str, Any]] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.entered: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, tuple]] = []

        self.task_script: list[str] = ["running", "OK"]
        self.task_states: dict[str, list[str]] = {}
        self.task_logs: dict[str, list[str]] = {}
        self.task_effects: dict[str, Any] = {}
        self.submitted: list[dict[str, Any]] = []
        self.remote_tasks: dict[str, list[dict[str, Any]]] = {}
        self._pids = itertools.count(0xA000)
        self._uptime = itertools.count(1000, 10)
        self.closed = False

    # Cluster building

    def add_node(self, name: str, status: str = "online", version: str | None = "8.1.4") -> None:
        self.nodes[name] = {
            "node": name,
            "status": status,
            "cpu": 0.12,
            "maxcpu": 16,
            "mem": 12 * GIB,
            "maxmem": 64 * GIB,
            "level": "",
            "ssl_fingerprint": "AA:BB",
        }
        self.versions[name] = version
        self.guests.setdefault((name, ResourceType.VM), {})
        self.guests.setdefault((name, ResourceType.CONTAINER), {})
        self.node_storage.setdefault(name, {})

    def add_vm(
        self, node: str, vmid: int, name: str, memory: int = 2048, cores: int = 2, status: str = "running"
    ) -> None:
        self.guests[(node, ResourceType.VM)][vmid] = {
            "vmid": vmid,
            "name": name,
            "status": status,
            "cpus": cores,
            "maxmem": memory * MIB,
            "mem": memory * MIB // 2,
            "maxdisk": 32 * GIB,
            "disk": 0,
            "netin": 1000,
            "netout": 2000,
            "cpu": 0.03,
            "qmpstatus": status,
        }
        self.guest_status[vmid] = {"status": status, "qmpstatus": status, "ha": {"managed": 0}, "pid": 4242}
        self.guest_config[vmid] = {
            "name": name,
            "memory": memory,
            "cores": cores,
            "ostype": "l26",
            "net0": f"virtio=BC:24:11:00:00:{vmid % 100:02d},bridge=vmbr0",
            "digest": f"d{vmid}",
        }

    def add_container(
        self, node: str, vmid: int, hostname: str, memory: int = 512, status: str = "running"
    ) -> None:
        self.guests[(node, ResourceType.CONTAINER)][vmid] = {
            "vmid": vmid,
            "name": hostname,
            "status": status,
            "cpus": 1,
            "maxmem": memory * MIB,
            "mem": memory * MIB // 4,
            "maxswap": 512 * MIB,
            "swap": 0,
            "maxdisk": 8 * GIB,
            "disk": GIB,
            "type": "lxc",
        }
        self.guest_status[vmid] = {"status": status, "ha": {"managed": 0}}
        self.guest_config[vmid] = {
            "hostname": hostname,
            "memory": memory,
            "cores": 1,
            "ostype": "debian",
            "digest": f"d{vmid}",
        }

    def add_storage(
        self,
        storage_id: str,
        nodes: list[str],
        storage_type: str = "dir",
        content: str = "images,rootdir",
        total: int = 100 * GIB,
        shared: bool = False,
    ) -> None:
        self.storage_config[storage_id] = {
            "storage": storage_id,
            "type": storage_type,
            "content": content,
            "path": f"/var/lib/{storage_id}",
            "shared": int(shared),
            "digest": "cfgdigest",
        }
        for node in nodes:
            self.node_storage[node][storage_id] = {
                "storage": storage_id,
                "type": storage_type,
                "content": content,
                "enabled": 1,
                "active": 1,
                "shared": int(shared),
                "total": total,
                "used": total // 4,
                "avail": total - total // 4,
            }

    def set_vm_memory(self, vmid: int, memory: int) -> None:
        node, rtype = self.locate(vmid)
        self.guests[(node, rtype)][vmid]["maxmem"] = memory * MIB
        self.guest_config[vmid]["memory"] = memory

    def remove_guest(self, vmid: int) -> None:
        node, rtype = self.locate(vmid)
        del self.guests[(node, rtype)][vmid]
        self.guest_status.pop(vmid, None)
        self.guest_config.pop(vmid, None)

    def set_guest_status(self, vmid: int, status: str) -> None:
        node, rtype = self.locate(vmid)
        self.guests[(node, rtype)][vmid]["status"] = status
        self.guest_status[vmid]["status"] = status
        if rtype == ResourceType.VM:
            self.guest_status[vmid]["qmpstatus"] = status

    def locate(self, vmid: int) -> tuple[str, ResourceType]:
        for key, guests in self.guests.items():
            if vmid in guests:
                return key
        raise KeyError(vmid)

    # Failure injection

    def fail(self, method: str, error: Exception, node: str | None = None, times: int | None = None) -> None:
        """Raise ``error`` from ``method`` (``times`` calls, or always)."""
        self.failures[(method, node)] = {"error": error, "remaining": times}

    def block(self, method: str) -> tuple[asyncio.Event, asyncio.Event]:
        """Park ``method`` until the returned release event is set."""
        self.gates[method] = asyncio.Event()
        self.entered[method] = asyncio.Event()
        return self.entered[method], self.gates[method]

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        node = args[0] if args else None
        for key in ((method, node), (method, None)):
            failure = self.failures.get(key)
            if failure is None:
                continue
            if failure["remaining"] is not None:
                failure["remaining"] -= 1
                if failure["remaining"] <= 0:
                    del self.failures[key]
            raise failure["error"]
        if method in self.gates:
            self.entered[method].set()
            await self.gates[method].wait()

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    # HypervisorAPI

    async def list_nodes(self) -> list[ApiNode]:
        await self._enter("list_nodes")
        uptime = next(self._uptime)
        return [ApiNode.model_validate({**entry, "uptime": uptime}) for entry in self.nodes.values()]

    async def get_node_status(self, node: str) -> ApiNodeStatus:
        await self._enter("get_node_status", node)
        version = self.versions.get(node)
        return ApiNodeStatus.model_validate(
            {
                "pveversion": f"pve-manager/{version}/2e78e89a" if version else None,
                "uptime": 5000,
                "cpuinfo": {"cpus": 16, "model": "EPYC"},
                "memory": {"total": 64 * GIB, "used": 12 * GIB},
                "kversion": "Linux 6.5",
            }
        )

    async def list_guests(self, node: str, resource_type: ResourceType) -> list[ApiGuest]:
        await self._enter("list_guests", node, resource_type)
        guests = self.guests.get((node, ResourceType(resource_type)), {})
        return [ApiGuest.model_validate(entry) for entry in guests.values()]

    async def get_guest_status(self, node: str, resource_type: ResourceType, vmid: int) -> ApiGuestStatus:
        await self._enter("get_guest_status", node, resource_type, vmid)
        return ApiGuestStatus.model_validate(self.guest_status[vmid])

    async def get_guest_config(self, node: str, resource_type: ResourceType, vmid: int) -> dict[str, Any]:
        await self._enter("get_guest_config", node, resource_type, vmid)
        return dict(self.guest_config[vmid])

    async def list_storage_config(self) -> list[ApiStorageConfig]:
        await self._enter("list_storage_config")
        return [ApiStorageConfig.model_validate(entry) for entry in self.storage_config.values()]

    async def list_node_storage(self, node: str) -> list[ApiNodeStorage]:
        await self._enter("list_node_storage", node)
        return [ApiNodeStorage.model_validate(entry) for entry in self.node_storage.get(node, {}).values()]

    async def submit_operation(
        self,
        node: str,
        resource_type: ResourceType,
        operation: OperationType,
        vmid: int,
        params: dict[str, Any] | None = None,
    ) -> str:
        await self._enter("submit_operation", node, resource_type, operation, vmid)
        resource_type = ResourceType(resource_type)
        operation = OperationType(operation)
        task_type = TASK_TYPES[(resource_type, operation)]
        started = int(datetime(2026, 10, 18, 9, 0, tzinfo=UTC).timestamp())
        upid = f"UPID:{node}:{next(self._pids):08X}:00000001:{started:08X}:{task_type}:{vmid}:root@pam:"
        self.submitted.append(
            {"upid": upid, "node": node, "resource_type": resource_type, "operation": operation,
             "vmid": vmid, "params": dict(params or {})}
        )
        self.task_states[upid] = list(self.task_script)
        self.task_logs[upid] = [f"starting {task_type} {vmid}", "TASK OK"]
        self.task_effects[upid] = (node, resource_type, operation, vmid, dict(params or {}))
        return upid

    def _apply_effect(self, upid: str) -> None:
        node, resource_type, operation, vmid, params = self.task_effects.pop(upid)
        if operation == OperationType.CREATE:
            if resource_type == ResourceType.VM:
                self.add_vm(node, vmid, params.get("name", f"vm{vmid}"), memory=params.get("memory", 1024),
                            status="stopped")
            else:
                self.add_container(node, vmid, params.get("hostname", f"ct{vmid}"), status="stopped")
        elif operation == OperationType.DELETE:
            self.remove_guest(vmid)
        elif operation == OperationType.START:
            self.set_guest_status(vmid, "running")
        elif operation in (OperationType.STOP, OperationType.SHUTDOWN):
            self.set_guest_status(vmid, "stopped")

    async def get_task_status(self, node: str, upid: str) -> ApiTaskStatus:
        await self._enter("get_task_status", node, upid)
        states = self.task_states[upid]
        state = states.pop(0) if len(states) > 1 else states[0]
        if state == "running":
            return ApiTaskStatus(upid=upid, node=node, status="running", starttime=1792314000)
        if state == "OK" and upid in self.task_effects:
            self._apply_effect(upid)
        return ApiTaskStatus(upid=upid, node=node, status="stopped", exitstatus=state, starttime=1792314000)

    async def list_tasks(self, node: str, limit: int = 500) -> list[ApiTaskListEntry]:
        await self._enter("list_tasks", node)
        entries = []
        for task in self.submitted:
            if task["node"] != node:
                continue
            upid = task["upid"]
            state = self.task_states[upid][0]
            entry = {
                "upid": upid,
                "node": node,
                "type": upid.split(":")[5],
                "id": str(task["vmid"]),
                "user": "root@pam",
                "starttime": 1792314000,
            }
            if state != "running":
                entry.update(endtime=1792314060, status=state)
            entries.append(entry)
        entries.extend(self.remote_tasks.get(node, []))
        return [ApiTaskListEntry.model_validate(entry) for entry in entries[:limit]]

    async def get_task_log(self, node: str, upid: str) -> list[str]:
        await self._enter("get_task_log", node, upid)
        return list(self.task_logs.get(upid, []))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def restore_logging():
    """Undo root handler, level and structlog changes made by a test"""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
    root.setLevel(level)
    set_sync_id(None)
    structlog.reset_defaults()


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite store with the full schema"""
    engine = create_async_database_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_async_session_factory(db_engine)


@pytest.fixture
def repositories(session_factory):
    return RepositoryRegistry(session_factory)


@pytest.fixture
def fake_api():
    return FakeHypervisor()


@pytest.fixture
def cluster(fake_api):
    """One node with two virtual machines and no storage"""
    fake_api.add_node("pve1")
    fake_api.add_vm("pve1", 100, "web")
    fake_api.add_vm("pve1", 101, "db")
    return fake_api


@pytest.fixture
def change_detection(repositories):
    return ChangeDetectionService(repositories, grace_passes=2)


@pytest.fixture
def orchestrator(fake_api, repositories, change_detection):
    return SyncOrchestrator(
        fake_api,
        repositories,
        change_detection=change_detection,
        worker_pool_size=4,
        retry_attempts=3,
        retry_base_delay=0,
        target="pve-test",
    )


@pytest.fixture
def task_monitor(fake_api, repositories, orchestrator):
    return TaskMonitor(
        fake_api,
        repositories,
        orchestrator=orchestrator,
        initial_interval=0.01,
        max_interval=0.02,
        backoff_factor=2.0,
        default_timeout=5.0,
    )
