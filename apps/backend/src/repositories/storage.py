"""
Repository for cluster storage pools.
"""

from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apps.backend.src.core.exceptions import ConstraintError
from apps.backend.src.models.node import Node
from apps.backend.src.models.storage import Storage
from apps.backend.src.repositories.base import BaseRepository
from apps.backend.src.schemas.common import ResourceType, StorageType
from apps.backend.src.schemas.resources import StorageCreate, StorageUpdate


class StorageRepository(BaseRepository):
    model = Storage
    resource_type = ResourceType.STORAGE
    create_schema = StorageCreate
    update_schema = StorageUpdate
    filter_fields = ("type", "enabled", "shared")

    async def _require_nodes(self, node_ids: list[str], session: AsyncSession) -> None:
        if not node_ids:
            return
        result = await session.execute(select(Node.id).where(Node.id.in_(node_ids)))
        missing = sorted(set(node_ids) - set(result.scalars().all()))
        if missing:
            raise ConstraintError(
                f"Storage references unknown nodes: {', '.join(missing)}",
                constraint="foreign_key",
                details={"node_ids": missing},
            )

    async def _check_create(self, payload: Any, session: AsyncSession) -> None:
        await self._require_nodes(payload.accessible_nodes, session)

    async def _check_update(self, entity: Any, changes: dict[str, Any], session: AsyncSession) -> None:
        nodes = changes.get("accessible_nodes")
        if nodes:
            await self._require_nodes([n for n in nodes if n not in (entity.accessible_nodes or [])], session)

    async def list_by_type(
        self, storage_type: StorageType | str, session: AsyncSession | None = None
    ) -> list[Storage]:
        return await self.list({"type": StorageType(storage_type)}, session=session)

    async def list_by_node(self, node_id: str, session: AsyncSession | None = None) -> list[Storage]:
        """Storage pools reachable from a node."""
        async with self._session(session, "list_by_node") as s:
            result = await s.execute(select(Storage).order_by(Storage.id))
            return [pool for pool in result.scalars().all() if node_id in (pool.accessible_nodes or [])]

    async def statistics(self, session: AsyncSession | None = None) -> dict[str, Any]:
        """Pool counts and summed capacity, overall and per storage type."""
        async with self._session(session, "statistics") as s:
            total, enabled, shared, capacity, used, available = (
                await s.execute(
                    select(
                        func.count(),
                        func.sum(case((Storage.enabled.is_(True), 1), else_=0)),
                        func.sum(case((Storage.shared.is_(True), 1), else_=0)),
                        func.coalesce(func.sum(Storage.total_bytes), 0),
                        func.coalesce(func.sum(Storage.used_bytes), 0),
                        func.coalesce(func.sum(Storage.available_bytes), 0),
                    ).select_from(Storage)
                )
            ).one()
            by_type = await s.execute(
                select(Storage.type, func.count()).group_by(Storage.type).order_by(Storage.type)
            )
        capacity, used = int(capacity), int(used)
        return {
            "total": int(total),
            "enabled": int(enabled or 0),
            "shared": int(shared or 0),
            "total_capacity_bytes": capacity,
            "used_bytes": used,
            "available_bytes": int(available),
            "usage_percent": round(used * 100 / capacity, 2) if capacity else 0.0,
            "by_type": {storage_type: count for storage_type, count in by_type.all()},
        }
