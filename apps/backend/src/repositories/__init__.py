"""
Repository layer: typed persistence for the resource inventory and snapshot log.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.backend.src.schemas.common import ResourceType

from .base import BaseRepository
from .guest import ContainerRepository, GuestRepository, VirtualMachineRepository
from .node import NodeRepository
from .snapshot import StateSnapshotRepository
from .storage import StorageRepository
from .task import TaskRepository


class RepositoryRegistry:
    """One repository per entity, sharing a session factory and snapshot log"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.snapshots = StateSnapshotRepository(session_factory)
        self.nodes = NodeRepository(session_factory, self.snapshots)
        self.vms = VirtualMachineRepository(session_factory, self.snapshots)
        self.containers = ContainerRepository(session_factory, self.snapshots)
        self.storage = StorageRepository(session_factory, self.snapshots)
        self.tasks = TaskRepository(session_factory, self.snapshots)

    def for_type(self, resource_type: ResourceType | str) -> BaseRepository:
        return {
            ResourceType.NODE: self.nodes,
            ResourceType.VM: self.vms,
            ResourceType.CONTAINER: self.containers,
            ResourceType.STORAGE: self.storage,
            ResourceType.TASK: self.tasks,
        }[ResourceType(resource_type)]


__all__ = [
    "BaseRepository",
    "GuestRepository",
    "NodeRepository",
    "VirtualMachineRepository",
    "ContainerRepository",
    "StorageRepository",
    "TaskRepository",
    "StateSnapshotRepository",
    "RepositoryRegistry",
]
