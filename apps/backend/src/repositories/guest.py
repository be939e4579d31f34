"""
Repositories for virtual machines and containers.
"""

from typing import Any, ClassVar

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apps.backend.src.core.exceptions import ConstraintError, ValidationError
from apps.backend.src.models.container import Container
from apps.backend.src.models.node import Node
from apps.backend.src.models.virtual_machine import VirtualMachine
from apps.backend.src.repositories.base import BaseRepository
from apps.backend.src.schemas.common import GuestStatus, ResourceType
from apps.backend.src.schemas.resources import (
    ContainerCreate,
    ContainerUpdate,
    VMCreate,
    VMUpdate,
)


class GuestRepository(BaseRepository):
    """Common rules for guests: owning node must exist, vmids are cluster-unique"""

    sibling_model: ClassVar[type]
    filter_fields = ("node_id", "status", "template", "ha_managed")

    def _coerce_id(self, entity_id: Any) -> Any:
        try:
            return int(entity_id)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Invalid {self.resource_type.value} id: {entity_id}", field="id", value=entity_id
            ) from None

    async def _require_node(self, node_id: str, session: AsyncSession) -> None:
        if await session.get(Node, node_id) is None:
            raise ConstraintError(
                f"Node {node_id} does not exist",
                constraint="foreign_key",
                details={"node_id": node_id},
            )

    async def _check_create(self, payload: Any, session: AsyncSession) -> None:
        await self._require_node(payload.node_id, session)
        if await session.get(self.sibling_model, payload.id) is not None:
            raise ConstraintError(
                f"vmid {payload.id} is already used by another {self.sibling_model.__name__}",
                constraint="unique",
                details={"resource_id": str(payload.id)},
            )

    async def _check_update(self, entity: Any, changes: dict[str, Any], session: AsyncSession) -> None:
        node_id = changes.get("node_id")
        if node_id is not None and node_id != entity.node_id:
            await self._require_node(node_id, session)

    async def list_by_node(self, node_id: str, session: AsyncSession | None = None) -> list:
        async with self._session(session, "list_by_node") as s:
            result = await s.execute(
                select(self.model).where(self.model.node_id == node_id).order_by(self.model.id)
            )
            return list(result.scalars().all())

    async def list_by_status(
        self, status: GuestStatus | str, session: AsyncSession | None = None
    ) -> list:
        async with self._session(session, "list_by_status") as s:
            result = await s.execute(
                select(self.model)
                .where(self.model.status == GuestStatus(status).value)
                .order_by(self.model.id)
            )
            return list(result.scalars().all())

    async def node_assignments(self, session: AsyncSession | None = None) -> dict[int, str]:
        """Map of vmid to owning node for every persisted guest."""
        async with self._session(session, "node_assignments") as s:
            result = await s.execute(select(self.model.id, self.model.node_id))
            return {vmid: node_id for vmid, node_id in result.all()}

    async def statistics(self, session: AsyncSession | None = None) -> dict[str, Any]:
        """Run states, templates and allocated resources of this guest type."""
        model = self.model
        running = and_(model.template.is_(False), model.status == GuestStatus.RUNNING.value)
        stopped = and_(model.template.is_(False), model.status == GuestStatus.STOPPED.value)
        async with self._session(session, "statistics") as s:
            row = (
                await s.execute(
                    select(
                        func.count(),
                        func.sum(case((running, 1), else_=0)),
                        func.sum(case((stopped, 1), else_=0)),
                        func.sum(case((model.template.is_(True), 1), else_=0)),
                        func.coalesce(func.sum(model.memory_bytes), 0),
                        func.coalesce(func.sum(model.disk_size), 0),
                        # Mean load of running guests only
                        func.avg(case((model.status == GuestStatus.RUNNING.value, model.cpu_usage))),
                    ).select_from(model)
                )
            ).one()
        total, running_count, stopped_count, templates, memory, disk, cpu_usage = row
        return {
            "total": int(total),
            "running": int(running_count or 0),
            "stopped": int(stopped_count or 0),
            "templates": int(templates or 0),
            "memory_allocated_bytes": int(memory),
            "disk_allocated_bytes": int(disk),
            "avg_cpu_usage": float(cpu_usage) if cpu_usage is not None else 0.0,
        }


class VirtualMachineRepository(GuestRepository):
    model = VirtualMachine
    sibling_model = Container
    resource_type = ResourceType.VM
    create_schema = VMCreate
    update_schema = VMUpdate


class ContainerRepository(GuestRepository):
    model = Container
    sibling_model = VirtualMachine
    resource_type = ResourceType.CONTAINER
    create_schema = ContainerCreate
    update_schema = ContainerUpdate
