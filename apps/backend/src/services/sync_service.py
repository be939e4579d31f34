"""
Discovery & Sync Orchestrator

Walks the cluster topology, fetches resource state from the hypervisor API and
feeds every observation through change detection, producing a SyncReport.

Concurrency model:
- API calls run concurrently, bounded by a semaphore of ``worker_pool_size``.
  The semaphore is held only for the duration of one API call, never across
  retries' backoff sleeps or database work.
- Persisting is serialized by the change detection lock, one resource at a time.
- Full syncs are guarded by an instance-scoped advisory lock so independent
  orchestrators (one per cluster) never interfere with each other.
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError as PydanticValidationError

from apps.backend.src.core.config import get_settings
from apps.backend.src.core.database import utcnow
from apps.backend.src.core.exceptions import (
    FatalAPIError,
    HypervisorAPIError,
    InfrastructureException,
    SyncInProgressError,
    TransientAPIError,
)
from apps.backend.src.core.logging import sync_context
from apps.backend.src.repositories import RepositoryRegistry
from apps.backend.src.schemas.common import ChangeType, ResourceType
from apps.backend.src.schemas.proxmox import (
    ApiGuest,
    ApiNode,
    ApiNodeStorage,
    ApiStorageConfig,
    build_container,
    build_node,
    build_storage,
    build_task,
    build_vm,
)
from apps.backend.src.schemas.sync import (
    ChangeResult,
    NodeError,
    SyncError,
    SyncReport,
    SyncScope,
    SyncStatus,
)
from apps.backend.src.services.change_detection import ChangeDetectionService
from apps.backend.src.utils.proxmox_client import HypervisorAPI

logger = structlog.get_logger(__name__)

T = TypeVar("T")

GUEST_TYPES = (ResourceType.VM, ResourceType.CONTAINER)


class _SyncPass:
    """Mutable state of one sync run"""

    def __init__(self, report: SyncReport, seen_at: datetime):
        self.report = report
        self.seen_at = seen_at
        self.cancelled = asyncio.Event()
        self.listed_nodes: set[str] = set()
        self.failed_nodes: set[str] = set()
        self.seen: dict[ResourceType, set[str]] = {
            ResourceType.NODE: set(),
            ResourceType.VM: set(),
            ResourceType.CONTAINER: set(),
            ResourceType.STORAGE: set(),
        }
        self.storage_reports: dict[str, dict[str, ApiNodeStorage]] = {}
        # Nodes whose storage listing succeeded in this pass
        self.storage_nodes: set[str] = set()
        # None when the cluster definitions could not be fetched
        self.storage_definitions: dict[str, ApiStorageConfig] | None = {}

    def node_failed(self, node: str, error: Exception | str) -> None:
        self.failed_nodes.add(node)
        self.report.node_errors.append(
            NodeError(
                node=node,
                message=str(error),
                error_code=getattr(error, "error_code", "NODE_ERROR"),
            )
        )


class SyncOrchestrator:
    """
    Drives discovery passes against one hypervisor cluster.

    Args:
        client: Hypervisor API implementation
        repositories: Repository registry of the local store
        change_detection: Optional pre-built change detection service
        target: Name of the cluster, used in logs and lock errors
    """

    def __init__(
        self,
        client: HypervisorAPI,
        repositories: RepositoryRegistry,
        change_detection: ChangeDetectionService | None = None,
        worker_pool_size: int | None = None,
        retry_attempts: int | None = None,
        retry_base_delay: float | None = None,
        grace_passes: int | None = None,
        target: str = "default",
    ):
        settings = get_settings().sync
        self.client = client
        self.repositories = repositories
        self.target = target
        self.worker_pool_size = worker_pool_size or settings.sync_worker_pool_size
        self.retry_attempts = retry_attempts or settings.sync_retry_attempts
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.sync_retry_base_delay
        )
        self.change_detection = change_detection or ChangeDetectionService(
            repositories, grace_passes=grace_passes or settings.sync_deletion_grace_passes
        )

        self._semaphore = asyncio.Semaphore(self.worker_pool_size)
        self._full_sync_lock = asyncio.Lock()
        self._active_passes: set[_SyncPass] = set()
        self.last_report: SyncReport | None = None

    @property
    def is_syncing(self) -> bool:
        """Whether a full sync currently holds the advisory lock."""
        return self._full_sync_lock.locked()

    def cancel(self) -> None:
        """Request cooperative cancellation of every in-flight pass."""
        for sync_pass in self._active_passes:
            sync_pass.cancelled.set()
        logger.info("Sync cancellation requested", target=self.target, passes=len(self._active_passes))

    # Entry points

    async def sync(self, scope: SyncScope | None = None) -> SyncReport:
        """
        Run a sync pass.

        A full sync (no scope) takes the advisory lock and performs missing
        detection; a scoped sync does neither.

        Raises:
            SyncInProgressError: A full sync is already running on this orchestrator
            FatalAPIError: Authentication or authorization failure
        """
        scope = scope or SyncScope()
        if scope.resource_id is not None:
            return await self.sync_resource(scope.resource_type, scope.resource_id, node=scope.node)

        if not scope.is_full:
            return await self._execute(scope, self._sync_cluster)

        if self._full_sync_lock.locked():
            raise SyncInProgressError(self.target)
        async with self._full_sync_lock:
            return await self._execute(scope, self._sync_cluster)

    async def sync_resource(
        self,
        resource_type: ResourceType | str,
        resource_id: Any,
        node: str | None = None,
        change_type: ChangeType = ChangeType.DISCOVERED,
        expect_deleted: bool = False,
    ) -> SyncReport:
        """
        Targeted re-sync of a single resource.

        Args:
            resource_type: Type of the resource
            resource_id: Identifier of the resource
            node: Node to look on; defaults to the persisted owner
            change_type: Classification if the resource is not persisted yet
            expect_deleted: The resource was removed by a completed operation;
                its absence is classified ``deleted`` without a grace window
        """
        scope = SyncScope(resource_type=resource_type, resource_id=str(resource_id), node=node)

        async def run(sync_pass: _SyncPass, run_scope: SyncScope) -> None:
            await self._sync_single(sync_pass, run_scope, ChangeType(change_type), expect_deleted)

        return await self._execute(scope, run)

    async def _execute(
        self,
        scope: SyncScope,
        runner: Callable[[_SyncPass, SyncScope], Awaitable[None]],
    ) -> SyncReport:
        report = SyncReport(scope=scope)
        sync_pass = _SyncPass(report, seen_at=utcnow())
        self._active_passes.add(sync_pass)

        try:
            with sync_context(report.sync_id), structlog.contextvars.bound_contextvars(
                operation="sync", target=self.target
            ):
                logger.info("Sync started", scope=scope.model_dump(mode="json", exclude_none=True))
                try:
                    await runner(sync_pass, scope)
                except FatalAPIError as e:
                    report.status = SyncStatus.FAILED
                    report.finished_at = utcnow()
                    self.last_report = report
                    logger.error("Sync aborted by fatal API error", error=str(e))
                    raise

                report.status = self._final_status(sync_pass)
                report.finished_at = utcnow()
                self.last_report = report
                logger.info("Sync finished", **report.summary())
                return report
        finally:
            self._active_passes.discard(sync_pass)

    @staticmethod
    def _final_status(sync_pass: _SyncPass) -> SyncStatus:
        report = sync_pass.report
        if report.status == SyncStatus.FAILED:
            return SyncStatus.FAILED
        if sync_pass.cancelled.is_set():
            return SyncStatus.CANCELLED
        if report.node_errors or report.errors:
            return SyncStatus.PARTIAL
        return SyncStatus.SUCCESS

    # API access

    async def _call(self, label: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Call the API with bounded concurrency, retrying transient failures."""
        delay = self.retry_base_delay
        attempt = 1
        while True:
            try:
                async with self._semaphore:
                    return await func(*args)
            except TransientAPIError as e:
                if attempt >= self.retry_attempts:
                    logger.warning(
                        "API call failed after retries", call=label, attempts=attempt, error=str(e)
                    )
                    raise
                logger.warning(
                    "Transient API error, retrying",
                    call=label,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                delay *= 2
                attempt += 1

    async def _run_jobs(self, jobs: list[Coroutine[Any, Any, None]]) -> None:
        """Run jobs concurrently; a fatal error cancels the remaining ones."""
        tasks = [asyncio.create_task(job) for job in jobs]
        if not tasks:
            return
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _resource_failed(
        self,
        sync_pass: _SyncPass,
        resource_type: ResourceType,
        resource_id: Any,
        node: str | None,
        error: Exception,
    ) -> None:
        attempts = self.retry_attempts if isinstance(error, TransientAPIError) else 1
        if isinstance(error, PydanticValidationError):
            error_code = "VALIDATION_ERROR"
        else:
            error_code = getattr(error, "error_code", "SYNC_ERROR")
        sync_pass.report.errors.append(
            SyncError(
                resource_type=resource_type,
                resource_id=str(resource_id),
                node=node,
                message=str(error),
                error_code=error_code,
                attempts=attempts,
            )
        )
        logger.warning(
            "Resource sync failed",
            resource_type=resource_type.value,
            resource_id=str(resource_id),
            node=node,
            error=str(error),
        )

    async def _classify(
        self,
        sync_pass: _SyncPass,
        resource: BaseModel,
        change_type: ChangeType = ChangeType.DISCOVERED,
    ) -> ChangeResult | None:
        resource_type = ResourceType(resource.kind)
        try:
            result = await self.change_detection.detect(
                resource, change_type=change_type, seen_at=sync_pass.seen_at
            )
        except FatalAPIError:
            raise
        except InfrastructureException as e:
            self._resource_failed(sync_pass, resource_type, resource.id, None, e)
            return None
        sync_pass.report.record(result)
        return result

    # Full and scoped cluster walks

    async def _sync_cluster(self, sync_pass: _SyncPass, scope: SyncScope) -> None:
        report = sync_pass.report
        try:
            nodes = await self._call("list_nodes", self.client.list_nodes)
        except FatalAPIError:
            raise
        except HypervisorAPIError as e:
            report.status = SyncStatus.FAILED
            report.node_errors.append(
                NodeError(node="*", message=f"Node listing failed: {e}", error_code=e.error_code)
            )
            logger.error("Node listing failed", error=str(e))
            return

        sync_pass.listed_nodes = {entry.node for entry in nodes}
        if scope.node is not None:
            nodes = [entry for entry in nodes if entry.node == scope.node]
            if not nodes:
                sync_pass.node_failed(scope.node, f"Node {scope.node} not present in node listing")
                return

        include_storage = scope.resource_type in (None, ResourceType.STORAGE)
        if include_storage:
            try:
                definitions = await self._call("list_storage_config", self.client.list_storage_config)
                sync_pass.storage_definitions = {d.storage: d for d in definitions}
            except FatalAPIError:
                raise
            except HypervisorAPIError as e:
                sync_pass.storage_definitions = None
                self._resource_failed(sync_pass, ResourceType.STORAGE, "*", None, e)

        await self._run_jobs([self._sync_node(sync_pass, scope, entry) for entry in nodes])

        if include_storage and not sync_pass.cancelled.is_set():
            await self._sync_storage(sync_pass)

        if scope.is_full and not sync_pass.cancelled.is_set() and report.status != SyncStatus.FAILED:
            await self._detect_missing(sync_pass)

    async def _sync_node(self, sync_pass: _SyncPass, scope: SyncScope, entry: ApiNode) -> None:
        if sync_pass.cancelled.is_set():
            return
        node = entry.node
        sync_pass.seen[ResourceType.NODE].add(node)

        if not entry.online:
            sync_pass.node_failed(node, f"Node {node} is {entry.status}")
            await self._classify(sync_pass, build_node(entry, None, sync_pass.seen_at))
            return

        guest_types = [t for t in GUEST_TYPES if scope.resource_type in (None, t)]
        include_storage = scope.resource_type in (None, ResourceType.STORAGE)

        try:
            status = await self._call(f"node_status:{node}", self.client.get_node_status, node)
            listings: dict[ResourceType, list[ApiGuest]] = {}
            for guest_type in guest_types:
                listings[guest_type] = await self._call(
                    f"list_{guest_type.value}:{node}", self.client.list_guests, node, guest_type
                )
            storage = (
                await self._call(f"list_storage:{node}", self.client.list_node_storage, node)
                if include_storage
                else []
            )
        except FatalAPIError:
            raise
        except HypervisorAPIError as e:
            sync_pass.node_failed(node, e)
            logger.warning("Node enumeration failed", node=node, error=str(e))
            try:
                await self._classify(sync_pass, build_node(entry, None, sync_pass.seen_at))
            except PydanticValidationError as ve:
                self._resource_failed(sync_pass, ResourceType.NODE, node, node, ve)
            return

        # The node row must exist before its guests are persisted
        try:
            node_resource = build_node(entry, status, sync_pass.seen_at)
        except PydanticValidationError as e:
            sync_pass.node_failed(node, e)
            return
        await self._classify(sync_pass, node_resource)

        if include_storage:
            sync_pass.storage_nodes.add(node)
        for pool in storage:
            sync_pass.storage_reports.setdefault(pool.storage, {})[node] = pool

        jobs = []
        for guest_type, guests in listings.items():
            for guest in guests:
                sync_pass.seen[guest_type].add(str(guest.vmid))
                jobs.append(self._sync_guest(sync_pass, node, guest_type, guest))
        await self._run_jobs(jobs)

        if scope.resource_type is None:
            await self._sync_tasks(sync_pass, node)

    async def _fetch_guest(
        self, node: str, resource_type: ResourceType, entry: ApiGuest, seen_at: datetime
    ) -> BaseModel:
        vmid = entry.vmid
        status = await self._call(
            f"{resource_type.value}_status:{vmid}",
            self.client.get_guest_status,
            node,
            resource_type,
            vmid,
        )
        config = await self._call(
            f"{resource_type.value}_config:{vmid}",
            self.client.get_guest_config,
            node,
            resource_type,
            vmid,
        )
        builder = build_vm if resource_type == ResourceType.VM else build_container
        return builder(node, entry, status, config, seen_at)

    async def _sync_guest(
        self,
        sync_pass: _SyncPass,
        node: str,
        resource_type: ResourceType,
        entry: ApiGuest,
        change_type: ChangeType = ChangeType.DISCOVERED,
    ) -> None:
        if sync_pass.cancelled.is_set():
            return
        try:
            resource = await self._fetch_guest(node, resource_type, entry, sync_pass.seen_at)
        except FatalAPIError:
            raise
        except (HypervisorAPIError, PydanticValidationError) as e:
            self._resource_failed(sync_pass, resource_type, entry.vmid, node, e)
            # Listed, so it still counts as present for the grace window
            await self.change_detection.mark_seen(resource_type, entry.vmid, seen_at=sync_pass.seen_at)
            return
        await self._classify(sync_pass, resource, change_type=change_type)

    async def _sync_tasks(self, sync_pass: _SyncPass, node: str) -> None:
        """Reconcile persisted tasks with the node's task log."""
        if sync_pass.cancelled.is_set():
            return
        try:
            entries = await self._call(f"list_tasks:{node}", self.client.list_tasks, node)
        except FatalAPIError:
            raise
        except HypervisorAPIError as e:
            self._resource_failed(sync_pass, ResourceType.TASK, "*", node, e)
            return

        for entry in entries:
            if sync_pass.cancelled.is_set():
                return
            try:
                result = await self.change_detection.reconcile_task(build_task(entry))
            except (InfrastructureException, PydanticValidationError) as e:
                self._resource_failed(sync_pass, ResourceType.TASK, entry.upid, node, e)
                continue
            sync_pass.report.record(result)

    @staticmethod
    def _merge_storage(
        storage_id: str,
        reports: dict[str, ApiNodeStorage],
        definition: ApiStorageConfig | None,
        previous: Any,
        queried: set[str],
        listed: set[str],
        seen_at: datetime,
    ) -> BaseModel:
        """Merge per-node reports of one pool into its observed state.

        Nodes that still exist but were not queried in this pass keep their
        persisted membership. A node-local pool keeps its persisted capacity
        while any of its nodes is unobserved.
        """
        unobserved = [
            node
            for node in ((previous.accessible_nodes or []) if previous is not None else [])
            if node in listed and node not in queried
        ]
        resource = build_storage(storage_id, reports, definition, seen_at, extra_nodes=unobserved)
        if unobserved and not resource.shared:
            resource = resource.model_copy(
                update={
                    "total_bytes": previous.total_bytes,
                    "used_bytes": previous.used_bytes,
                    "available_bytes": previous.available_bytes,
                }
            )
        return resource

    async def _sync_storage(self, sync_pass: _SyncPass) -> None:
        persisted = {pool.id: pool for pool in await self.repositories.storage.all()}

        for storage_id in sorted(sync_pass.storage_reports):
            if sync_pass.cancelled.is_set():
                return
            sync_pass.seen[ResourceType.STORAGE].add(storage_id)
            if sync_pass.storage_definitions is None:
                # Reported, so present; tracked fields wait for the definitions
                await self.change_detection.mark_seen(
                    ResourceType.STORAGE, storage_id, seen_at=sync_pass.seen_at
                )
                continue
            try:
                resource = self._merge_storage(
                    storage_id,
                    sync_pass.storage_reports[storage_id],
                    sync_pass.storage_definitions.get(storage_id),
                    persisted.get(storage_id),
                    queried=sync_pass.storage_nodes,
                    listed=sync_pass.listed_nodes,
                    seen_at=sync_pass.seen_at,
                )
            except PydanticValidationError as e:
                self._resource_failed(sync_pass, ResourceType.STORAGE, storage_id, None, e)
                await self.change_detection.mark_seen(
                    ResourceType.STORAGE, storage_id, seen_at=sync_pass.seen_at
                )
                continue
            await self._classify(sync_pass, resource)

    # Missing detection

    def _owner_enumerated(self, sync_pass: _SyncPass, node: str) -> bool:
        """Whether absence on this node is meaningful in the current pass."""
        return node not in sync_pass.failed_nodes

    async def _record_missing(self, sync_pass: _SyncPass, resource_type: ResourceType, resource_id: Any) -> None:
        result = await self.change_detection.record_missing(resource_type, resource_id)
        if result is not None:
            sync_pass.report.record(result)

    async def _detect_missing(self, sync_pass: _SyncPass) -> None:
        """Advance the grace window of persisted resources absent from this pass."""
        # Children before their node so a node deletion never has to cascade over them
        for guest_type in GUEST_TYPES:
            repo = self.repositories.for_type(guest_type)
            for vmid, node in sorted((await repo.node_assignments()).items()):
                if str(vmid) in sync_pass.seen[guest_type]:
                    continue
                if self._owner_enumerated(sync_pass, node):
                    await self._record_missing(sync_pass, guest_type, vmid)

        for pool in await self.repositories.storage.all():
            if pool.id in sync_pass.seen[ResourceType.STORAGE]:
                continue
            if all(self._owner_enumerated(sync_pass, n) for n in pool.accessible_nodes or []):
                await self._record_missing(sync_pass, ResourceType.STORAGE, pool.id)

        for node_id in await self.repositories.nodes.ids():
            if node_id not in sync_pass.listed_nodes:
                await self._record_missing(sync_pass, ResourceType.NODE, node_id)

    # Targeted re-sync

    async def _sync_single(
        self,
        sync_pass: _SyncPass,
        scope: SyncScope,
        change_type: ChangeType,
        expect_deleted: bool,
    ) -> None:
        resource_type = ResourceType(scope.resource_type)
        resource_id = scope.resource_id
        report = sync_pass.report

        async def absent(message: str) -> None:
            if expect_deleted:
                result = await self.change_detection.confirm_deleted(resource_type, resource_id)
                if result is not None:
                    report.record(result)
                return
            report.errors.append(
                SyncError(
                    resource_type=resource_type,
                    resource_id=str(resource_id),
                    node=scope.node,
                    message=message,
                    error_code="RESOURCE_NOT_FOUND",
                )
            )

        try:
            if resource_type == ResourceType.NODE:
                nodes = await self._call("list_nodes", self.client.list_nodes)
                entry = next((n for n in nodes if n.node == resource_id), None)
                if entry is None:
                    await absent(f"Node {resource_id} not present in node listing")
                    return
                status = (
                    await self._call(f"node_status:{resource_id}", self.client.get_node_status, resource_id)
                    if entry.online
                    else None
                )
                await self._classify(sync_pass, build_node(entry, status, sync_pass.seen_at), change_type)

            elif resource_type in GUEST_TYPES:
                await self._sync_single_guest(sync_pass, scope, change_type, absent)

            elif resource_type == ResourceType.STORAGE:
                await self._sync_single_storage(sync_pass, scope, change_type, absent)

        except FatalAPIError:
            raise
        except (HypervisorAPIError, PydanticValidationError) as e:
            self._resource_failed(sync_pass, resource_type, resource_id, scope.node, e)

    async def _sync_single_guest(
        self,
        sync_pass: _SyncPass,
        scope: SyncScope,
        change_type: ChangeType,
        absent: Callable[[str], Awaitable[None]],
    ) -> None:
        resource_type = ResourceType(scope.resource_type)
        vmid = int(scope.resource_id)
        repo = self.repositories.for_type(resource_type)

        candidates: list[str]
        if scope.node is not None:
            candidates = [scope.node]
        else:
            existing = await repo.get(vmid)
            if existing is not None:
                candidates = [existing.node_id]
            else:
                nodes = await self._call("list_nodes", self.client.list_nodes)
                candidates = sorted(entry.node for entry in nodes if entry.online)

        for node in candidates:
            guests = await self._call(
                f"list_{resource_type.value}:{node}", self.client.list_guests, node, resource_type
            )
            entry = next((g for g in guests if g.vmid == vmid), None)
            if entry is not None:
                await self._sync_guest(sync_pass, node, resource_type, entry, change_type=change_type)
                return

        await absent(f"{resource_type.value} {vmid} not present on {', '.join(candidates) or 'any node'}")

    async def _sync_single_storage(
        self,
        sync_pass: _SyncPass,
        scope: SyncScope,
        change_type: ChangeType,
        absent: Callable[[str], Awaitable[None]],
    ) -> None:
        storage_id = scope.resource_id
        nodes = await self._call("list_nodes", self.client.list_nodes)
        listed = {entry.node for entry in nodes}
        online = sorted(entry.node for entry in nodes if entry.online)
        if scope.node is not None:
            online = [n for n in online if n == scope.node]

        reports: dict[str, ApiNodeStorage] = {}
        for node in online:
            for pool in await self._call(f"list_storage:{node}", self.client.list_node_storage, node):
                if pool.storage == storage_id:
                    reports[node] = pool
        if not reports:
            await absent(f"storage {storage_id} not reported by any node")
            return

        definitions = await self._call("list_storage_config", self.client.list_storage_config)
        definition = next((d for d in definitions if d.storage == storage_id), None)
        resource = self._merge_storage(
            storage_id,
            reports,
            definition,
            await self.repositories.storage.get(storage_id),
            queried=set(online),
            listed=listed,
            seen_at=sync_pass.seen_at,
        )
        await self._classify(sync_pass, resource, change_type)

    # Statistics

    async def sync_statistics(self) -> dict[str, Any]:
        """Inventory counts per resource type plus snapshot activity."""
        snapshot_stats = await self.repositories.snapshots.change_statistics()
        return {
            "target": self.target,
            "is_syncing": self.is_syncing,
            "last_snapshot_time": snapshot_stats["last_snapshot_time"],
            "resources": {
                ResourceType.NODE.value: await self.repositories.nodes.count(),
                ResourceType.VM.value: await self.repositories.vms.count(),
                ResourceType.CONTAINER.value: await self.repositories.containers.count(),
                ResourceType.STORAGE.value: await self.repositories.storage.count(),
                ResourceType.TASK.value: await self.repositories.tasks.count(),
            },
            "snapshots": snapshot_stats,
            "last_sync": self.last_report.summary() if self.last_report else None,
        }
