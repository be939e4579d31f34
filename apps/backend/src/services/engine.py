"""
Sync Engine

Facade wiring the state store, the hypervisor client, change detection, the
sync orchestrator and the task monitor. This is the surface consumed by the
command-line and reporting layers.
"""

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from apps.backend.src.core.config import ApplicationSettings, get_settings
from apps.backend.src.core.database import (
    create_async_database_engine,
    create_async_session_factory,
    create_schema,
)
from apps.backend.src.core.exceptions import ValidationError
from apps.backend.src.core.logging import setup_logging
from apps.backend.src.models.state_snapshot import StateSnapshot
from apps.backend.src.repositories import RepositoryRegistry
from apps.backend.src.schemas.common import PaginationParams, ResourceType
from apps.backend.src.schemas.sync import SyncReport, SyncScope
from apps.backend.src.schemas.task import OperationType, TaskHandle, TaskResult
from apps.backend.src.services.change_detection import ChangeDetectionService
from apps.backend.src.services.sync_service import SyncOrchestrator
from apps.backend.src.services.task_monitor import TaskMonitor
from apps.backend.src.utils.proxmox_client import HypervisorAPI, ProxmoxClient

logger = structlog.get_logger(__name__)


class SyncEngine:
    """Resource state synchronization engine for one hypervisor cluster"""

    def __init__(
        self,
        client: HypervisorAPI,
        session_factory: async_sessionmaker[AsyncSession],
        settings: ApplicationSettings | None = None,
        target: str = "default",
        db_engine: AsyncEngine | None = None,
    ):
        self.settings = settings or get_settings()
        self.client = client
        self.session_factory = session_factory
        self.db_engine = db_engine
        self.target = target

        self.repositories = RepositoryRegistry(session_factory)
        self.change_detection = ChangeDetectionService(
            self.repositories, grace_passes=self.settings.sync.sync_deletion_grace_passes
        )
        self.orchestrator = SyncOrchestrator(
            client,
            self.repositories,
            change_detection=self.change_detection,
            worker_pool_size=self.settings.sync.sync_worker_pool_size,
            retry_attempts=self.settings.sync.sync_retry_attempts,
            retry_base_delay=self.settings.sync.sync_retry_base_delay,
            target=target,
        )
        self.task_monitor = TaskMonitor(
            client,
            self.repositories,
            orchestrator=self.orchestrator,
            initial_interval=self.settings.tasks.task_poll_initial_interval,
            max_interval=self.settings.tasks.task_poll_max_interval,
            backoff_factor=self.settings.tasks.task_poll_backoff_factor,
            default_timeout=self.settings.tasks.task_default_timeout,
        )

    @classmethod
    async def from_settings(
        cls,
        settings: ApplicationSettings | None = None,
        create_tables: bool = False,
        configure_logging: bool = True,
    ) -> "SyncEngine":
        """Build an engine with its own database engine and API client.

        Unless ``configure_logging`` is false, installs the structured log
        handler described by ``settings.logging``.
        """
        settings = settings or get_settings()
        if configure_logging:
            setup_logging(settings.logging)
        client = ProxmoxClient.from_settings(settings.proxmox)
        db_engine = create_async_database_engine(settings.database.database_url)
        if create_tables:
            await create_schema(db_engine)
        return cls(
            client,
            create_async_session_factory(db_engine),
            settings=settings,
            target=settings.proxmox.proxmox_host,
            db_engine=db_engine,
        )

    async def __aenter__(self) -> "SyncEngine":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def sync(self, scope: SyncScope | dict[str, Any] | None = None) -> SyncReport:
        if isinstance(scope, dict):
            scope = SyncScope.model_validate(scope)
        return await self.orchestrator.sync(scope)

    def cancel_sync(self) -> None:
        self.orchestrator.cancel()

    async def get_resource_history(
        self,
        resource_type: ResourceType | str,
        resource_id: Any,
        after_id: int | None = None,
        limit: int = 100,
    ) -> list[StateSnapshot]:
        """Chronological snapshots of one resource; continue with ``after_id``."""
        return await self.repositories.snapshots.history(
            resource_type, resource_id, after_id=after_id, limit=limit
        )

    async def list_resources(
        self,
        resource_type: ResourceType | str,
        filters: dict[str, Any] | None = None,
        page: PaginationParams | None = None,
    ) -> list[Any]:
        try:
            repo = self.repositories.for_type(resource_type)
        except ValueError:
            raise ValidationError(
                f"Unknown resource type: {resource_type}", field="resource_type", value=resource_type
            ) from None
        return await repo.list(filters, page)

    async def submit_operation(
        self,
        operation: OperationType | str,
        resource_type: ResourceType | str,
        node: str,
        resource_id: int | None = None,
        params: dict[str, Any] | None = None,
    ) -> TaskHandle:
        return await self.task_monitor.submit(
            {
                "operation": operation,
                "resource_type": resource_type,
                "node": node,
                "resource_id": resource_id,
                "params": params or {},
            }
        )

    async def await_task(self, handle: TaskHandle, timeout: float | None = None) -> TaskResult:
        return await self.task_monitor.await_task(handle, timeout)

    async def sync_statistics(self) -> dict[str, Any]:
        return await self.orchestrator.sync_statistics()

    async def resource_statistics(self) -> dict[str, Any]:
        """Per-type inventory statistics from the local store."""
        return {
            "nodes": await self.repositories.nodes.resource_summary(),
            "vms": await self.repositories.vms.statistics(),
            "containers": await self.repositories.containers.statistics(),
            "storage": await self.repositories.storage.statistics(),
            "tasks": await self.repositories.tasks.statistics(),
        }

    async def purge_snapshots(self, days: int | None = None) -> int:
        """Retention maintenance; removes snapshots older than the configured window."""
        return await self.repositories.snapshots.purge_older_than(
            days or self.settings.retention.retention_snapshot_days
        )

    async def purge_tasks(self, days: int | None = None) -> int:
        return await self.repositories.tasks.purge_finished(
            days or self.settings.retention.retention_task_days
        )

    async def close(self) -> None:
        await self.task_monitor.close()
        await self.client.close()
        if self.db_engine is not None:
            await self.db_engine.dispose()
        logger.info("Sync engine closed", target=self.target)
