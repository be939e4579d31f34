"""
Task Monitor

Tracks asynchronous operations submitted to the hypervisor until they reach a
terminal state, then triggers a targeted re-sync of the affected resource.

State machine: pending -> running -> {ok, error}. ``timeout`` is a local
terminal state reached when the caller's deadline passes while the remote task
is still running; the remote task itself is not cancelled. A later full sync
reconciles timed-out tasks with their real outcome.
"""

import asyncio
import functools
from typing import Any

import structlog

from apps.backend.src.core.config import get_settings
from apps.backend.src.core.database import utcnow
from apps.backend.src.core.exceptions import (
    APIRequestError,
    HypervisorAPIError,
    NotFoundError,
    TransientAPIError,
)
from apps.backend.src.repositories import RepositoryRegistry
from apps.backend.src.schemas.common import ChangeType, ResourceType, TaskStatus
from apps.backend.src.schemas.task import (
    TASK_TYPES,
    OperationRequest,
    OperationType,
    TaskHandle,
    TaskResult,
    UPIDInfo,
    map_remote_status,
    task_target,
)
from apps.backend.src.services.sync_service import SyncOrchestrator
from apps.backend.src.utils.database_utils import validate_input
from apps.backend.src.utils.proxmox_client import HypervisorAPI

logger = structlog.get_logger(__name__)


class TaskMonitor:
    """
    Submits operations and follows their tasks to completion.

    Polling uses growing intervals (initial, initial*factor, ... capped at
    ``max_interval``) so long-running tasks cost few API calls.
    """

    def __init__(
        self,
        client: HypervisorAPI,
        repositories: RepositoryRegistry,
        orchestrator: SyncOrchestrator | None = None,
        initial_interval: float | None = None,
        max_interval: float | None = None,
        backoff_factor: float | None = None,
        default_timeout: float | None = None,
    ):
        settings = get_settings().tasks
        self.client = client
        self.repositories = repositories
        self.orchestrator = orchestrator
        self.initial_interval = initial_interval or settings.task_poll_initial_interval
        self.max_interval = max_interval or settings.task_poll_max_interval
        self.backoff_factor = backoff_factor or settings.task_poll_backoff_factor
        self.default_timeout = default_timeout or settings.task_default_timeout
        self._watches: dict[str, asyncio.Task] = {}

    async def submit(self, request: OperationRequest | dict[str, Any]) -> TaskHandle:
        """
        Submit an operation and start tracking its task.

        Raises:
            ValidationError: Malformed operation request
            NotFoundError: Target node is not in the local store
            HypervisorAPIError: The API rejected the submission
        """
        request = validate_input(OperationRequest, request, "operation")
        resource_type = ResourceType(request.resource_type)
        operation = OperationType(request.operation)

        if not await self.repositories.nodes.exists(request.node):
            raise NotFoundError(ResourceType.NODE.value, request.node)

        upid = await self.client.submit_operation(
            request.node, resource_type, operation, request.resource_id, request.params
        )
        try:
            info = UPIDInfo.parse(upid)
        except ValueError as e:
            raise APIRequestError(str(e)) from e

        await self.repositories.tasks.create(
            {
                "upid": upid,
                "node_id": info.node,
                "type": info.type or TASK_TYPES[(resource_type, operation)],
                "status": TaskStatus.PENDING,
                "resource_type": resource_type,
                "resource_id": str(request.resource_id),
                "user": info.user,
                "start_time": info.start_time,
            },
            change_type=ChangeType.CREATED,
        )

        handle = TaskHandle(
            upid=upid,
            node=info.node,
            type=info.type,
            status=TaskStatus.PENDING,
            operation=operation,
            resource_type=resource_type,
            resource_id=str(request.resource_id),
        )
        logger.info(
            "Task submitted",
            upid=upid,
            operation=operation.value,
            resource_type=resource_type.value,
            resource_id=handle.resource_id,
        )
        return handle

    async def handle_for(self, upid: str) -> TaskHandle:
        """Rebuild a handle for a persisted task."""
        task = await self.repositories.tasks.find_by_id(upid)
        operation = None
        resource_type = ResourceType(task.resource_type) if task.resource_type else None
        known = task_target(task.type)
        if known is not None:
            resource_type = resource_type or known[0]
            operation = known[1]
        return TaskHandle(
            upid=task.upid,
            node=task.node_id,
            type=task.type,
            status=TaskStatus(task.status),
            operation=operation,
            resource_type=resource_type,
            resource_id=task.resource_id,
            submitted_at=task.created_at,
        )

    async def poll(self, handle: TaskHandle) -> TaskHandle:
        """Refresh the task state once; a terminal handle is returned unchanged."""
        if handle.is_terminal:
            return handle

        remote = await self.client.get_task_status(handle.node, handle.upid)
        status = map_remote_status(remote.status, remote.exitstatus)

        if status == TaskStatus.RUNNING:
            if handle.status != TaskStatus.RUNNING:
                changes: dict[str, Any] = {"status": TaskStatus.RUNNING}
                if remote.start_time is not None:
                    changes["start_time"] = remote.start_time
                await self.repositories.tasks.update(handle.upid, changes)
                logger.info("Task running", upid=handle.upid)
            return handle.model_copy(update={"status": TaskStatus.RUNNING})

        try:
            log = await self.client.get_task_log(handle.node, handle.upid)
        except (TransientAPIError, APIRequestError) as e:
            logger.warning("Task log unavailable", upid=handle.upid, error=str(e))
            log = []

        await self.repositories.tasks.update(
            handle.upid,
            {
                "status": status,
                "end_time": utcnow(),
                "exit_status": remote.exitstatus,
                "log": log,
            },
        )
        finished = handle.model_copy(update={"status": status})
        logger.info("Task finished", upid=handle.upid, status=status.value, exit_status=remote.exitstatus)

        await self._resync(finished)
        return finished

    async def _resync(self, handle: TaskHandle) -> None:
        """Targeted re-sync of the resource a finished task acted on."""
        if self.orchestrator is None or handle.resource_type is None or handle.resource_id is None:
            return
        succeeded = handle.status == TaskStatus.OK
        try:
            report = await self.orchestrator.sync_resource(
                handle.resource_type,
                handle.resource_id,
                node=handle.node,
                change_type=(
                    ChangeType.CREATED
                    if handle.operation == OperationType.CREATE
                    else ChangeType.DISCOVERED
                ),
                expect_deleted=succeeded and handle.operation == OperationType.DELETE,
            )
        except HypervisorAPIError as e:
            logger.warning("Targeted re-sync failed", upid=handle.upid, error=str(e))
            return
        logger.debug("Targeted re-sync complete", upid=handle.upid, **report.summary())

    async def _mark_timeout(self, handle: TaskHandle) -> TaskHandle:
        await self.repositories.tasks.update(
            handle.upid, {"status": TaskStatus.TIMEOUT, "end_time": utcnow()}
        )
        logger.warning("Task wait timed out", upid=handle.upid)
        return handle.model_copy(update={"status": TaskStatus.TIMEOUT})

    async def await_task(self, handle: TaskHandle, timeout: float | None = None) -> TaskResult:
        """
        Poll until the task is terminal or the deadline passes.

        Transient API failures while polling are retried at the next interval.
        """
        timeout = timeout if timeout is not None else self.default_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        interval = self.initial_interval

        while True:
            try:
                handle = await self.poll(handle)
            except TransientAPIError as e:
                logger.warning("Task poll failed, will retry", upid=handle.upid, error=str(e))
            if handle.is_terminal:
                break

            remaining = deadline - loop.time()
            if remaining <= 0:
                handle = await self._mark_timeout(handle)
                break
            await asyncio.sleep(min(interval, remaining))
            interval = min(interval * self.backoff_factor, self.max_interval)

        return await self.result(handle.upid)

    async def result(self, upid: str) -> TaskResult:
        task = await self.repositories.tasks.find_by_id(upid)
        return TaskResult(
            upid=task.upid,
            status=TaskStatus(task.status),
            exit_status=task.exit_status,
            log=list(task.log or []),
            start_time=task.start_time,
            end_time=task.end_time,
            resource_type=ResourceType(task.resource_type) if task.resource_type else None,
            resource_id=task.resource_id,
        )

    def watch(self, handle: TaskHandle, timeout: float | None = None) -> asyncio.Task:
        """Follow a task in the background; the returned task resolves to its TaskResult."""
        existing = self._watches.get(handle.upid)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self.await_task(handle, timeout), name=f"task_watch_{handle.upid}")
        self._watches[handle.upid] = task
        task.add_done_callback(functools.partial(self._forget_watch, handle.upid))
        return task

    def _forget_watch(self, upid: str, task: asyncio.Task) -> None:
        # A newer watch may have replaced this one
        if self._watches.get(upid) is task:
            del self._watches[upid]

    @property
    def watching(self) -> list[str]:
        return list(self._watches)

    async def list_active(self) -> list[TaskHandle]:
        return [await self.handle_for(task.upid) for task in await self.repositories.tasks.list_active()]

    async def close(self) -> None:
        """Stop local waiting on every outstanding watch."""
        watches = list(self._watches.values())
        for task in watches:
            if not task.done():
                task.cancel()
        await asyncio.gather(*watches, return_exceptions=True)
        self._watches.clear()
