"""
Repository for cluster nodes, including dependent-row handling on delete.
"""

from typing import Any

from sqlalchemy import case, delete as sql_delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apps.backend.src.core.exceptions import ConstraintError
from apps.backend.src.models.container import Container
from apps.backend.src.models.node import Node
from apps.backend.src.models.storage import Storage
from apps.backend.src.models.task import Task
from apps.backend.src.models.virtual_machine import VirtualMachine
from apps.backend.src.repositories.base import BaseRepository
from apps.backend.src.repositories.guest import ContainerRepository, VirtualMachineRepository
from apps.backend.src.repositories.storage import StorageRepository
from apps.backend.src.schemas.common import NodeStatus, ResourceType
from apps.backend.src.schemas.resources import NodeCreate, NodeUpdate


class NodeRepository(BaseRepository):
    model = Node
    resource_type = ResourceType.NODE
    create_schema = NodeCreate
    update_schema = NodeUpdate
    filter_fields = ("status", "version")

    async def list_by_status(
        self, status: NodeStatus | str, session: AsyncSession | None = None
    ) -> list[Node]:
        return await self.list({"status": NodeStatus(status)}, session=session)

    async def dependents(self, node_id: str, session: AsyncSession | None = None) -> dict[str, int]:
        """Count of guests still assigned to a node."""
        async with self._session(session, "dependents") as s:
            vms = await s.scalar(
                select(func.count()).select_from(VirtualMachine).where(VirtualMachine.node_id == node_id)
            )
            containers = await s.scalar(
                select(func.count()).select_from(Container).where(Container.node_id == node_id)
            )
        return {"vms": int(vms or 0), "containers": int(containers or 0)}

    async def _before_delete(self, entity: Any, cascade: bool, session: AsyncSession) -> None:
        counts = await self.dependents(entity.id, session=session)
        if (counts["vms"] or counts["containers"]) and not cascade:
            raise ConstraintError(
                f"Node {entity.id} still has {counts['vms']} VMs and "
                f"{counts['containers']} containers",
                constraint="foreign_key",
                details={"node_id": entity.id, **counts},
            )

        vm_repo = VirtualMachineRepository(self.session_factory, self.snapshots)
        container_repo = ContainerRepository(self.session_factory, self.snapshots)
        for repo in (vm_repo, container_repo):
            for guest in await repo.list_by_node(entity.id, session=session):
                await repo.delete(guest.id, session=session)

        storage_repo = StorageRepository(self.session_factory, self.snapshots)
        result = await session.execute(select(Storage).order_by(Storage.id))
        for pool in result.scalars().all():
            if entity.id in (pool.accessible_nodes or []):
                remaining = [n for n in pool.accessible_nodes if n != entity.id]
                await storage_repo.update(pool.id, {"accessible_nodes": remaining}, session=session)

        await session.execute(sql_delete(Task).where(Task.node_id == entity.id))

    async def resource_summary(self, session: AsyncSession | None = None) -> dict[str, Any]:
        """Cluster capacity: node counts, summed CPU and memory, mean CPU load."""
        async with self._session(session, "resource_summary") as s:
            total, online, cpu, memory, cpu_usage = (
                await s.execute(
                    select(
                        func.count(),
                        func.sum(case((Node.status == NodeStatus.ONLINE.value, 1), else_=0)),
                        func.coalesce(func.sum(Node.cpu_max), 0),
                        func.coalesce(func.sum(Node.memory_max), 0),
                        func.avg(Node.cpu_usage),
                    ).select_from(Node)
                )
            ).one()
        return {
            "total": int(total),
            "online": int(online or 0),
            "offline": int(total) - int(online or 0),
            "total_cpu": int(cpu),
            "total_memory_bytes": int(memory),
            "avg_cpu_usage": float(cpu_usage) if cpu_usage is not None else 0.0,
        }
