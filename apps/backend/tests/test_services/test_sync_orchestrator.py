"""
Tests for SyncOrchestrator: discovery passes, drift, grace-window deletion,
failure isolation, retries, cancellation and the advisory lock.
"""

import asyncio
from unittest.mock import AsyncMock, call, patch

import pytest

from apps.backend.src.core.database import (
    create_async_database_engine,
    create_async_session_factory,
    create_schema,
)
from apps.backend.src.core.exceptions import (
    APIRequestError,
    FatalAPIError,
    SyncInProgressError,
    TransientAPIError,
)
from apps.backend.src.repositories import RepositoryRegistry
from apps.backend.src.schemas.common import ResourceType, TaskStatus
from apps.backend.src.schemas.sync import SyncScope, SyncStatus
from apps.backend.src.services.sync_service import SyncOrchestrator

GIB = 1024 * 1024 * 1024


class TestDiscoveryPasses:
    """End-to-end passes against a steady cluster"""

    @pytest.mark.asyncio
    async def test_first_sync_discovers_everything(self, cluster, orchestrator, repositories):
        """Test a first pass against an empty store"""
        report = await orchestrator.sync()

        assert report.status == SyncStatus.SUCCESS
        assert report.created == 3
        assert report.discovered == 3
        assert report.updated == report.deleted == report.unchanged == 0
        assert report.by_type == {"node": {"discovered": 1}, "vm": {"discovered": 2}}
        assert report.exit_code == 0

        assert await repositories.nodes.ids() == ["pve1"]
        assert await repositories.vms.ids() == [100, 101]
        node = await repositories.nodes.find_by_id("pve1")
        assert node.version == "8.1.4"
        assert node.cpu_max == 16

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, cluster, orchestrator, repositories):
        """Test that an unchanged cluster produces no changes or snapshots"""
        await orchestrator.sync()
        snapshots_before = await repositories.snapshots.count()

        report = await orchestrator.sync()

        assert report.status == SyncStatus.SUCCESS
        assert (report.created, report.updated, report.deleted) == (0, 0, 0)
        assert report.unchanged == 3
        assert await repositories.snapshots.count() == snapshots_before

    @pytest.mark.asyncio
    async def test_drift_grace_window_and_deletion(self, cluster, orchestrator, repositories):
        """Test the full drift scenario: memory change, then removal over two passes"""
        first = await orchestrator.sync()
        assert first.created == 3
        again = await orchestrator.sync()
        assert (again.created, again.updated, again.deleted) == (0, 0, 0)

        cluster.set_vm_memory(101, 4096)
        drift = await orchestrator.sync()
        assert drift.updated == 1
        assert drift.by_type["vm"] == {"updated": 1, "unchanged": 1}

        history = await repositories.snapshots.history(ResourceType.VM, 101)
        assert [s.change_type for s in history] == ["discovered", "updated"]
        diff = history[-1].resource_data["diff"]
        assert diff["config.memory"] == {"old": 2048, "new": 4096}
        assert diff["memory_bytes"] == {"old": 2048 * 1024 * 1024, "new": 4096 * 1024 * 1024}
        assert set(diff) == {"config.memory", "memory_bytes"}

        cluster.remove_guest(101)
        first_absent = await orchestrator.sync()
        assert first_absent.deleted == 0
        vm = await repositories.vms.find_by_id(101)
        assert vm.missing_count == 1

        second_absent = await orchestrator.sync()
        assert second_absent.deleted == 1
        assert await repositories.vms.get(101) is None
        history = await repositories.snapshots.history(ResourceType.VM, 101)
        assert [s.change_type for s in history] == ["discovered", "updated", "deleted"]

    @pytest.mark.asyncio
    async def test_reappearing_resource_resets_grace_window(self, cluster, orchestrator, repositories):
        """Test that a resource seen again before the threshold is kept"""
        await orchestrator.sync()
        vm = dict(cluster.guests[("pve1", ResourceType.VM)][100])
        status = dict(cluster.guest_status[100])
        config = dict(cluster.guest_config[100])

        cluster.remove_guest(100)
        await orchestrator.sync()
        assert (await repositories.vms.find_by_id(100)).missing_count == 1

        cluster.guests[("pve1", ResourceType.VM)][100] = vm
        cluster.guest_status[100] = status
        cluster.guest_config[100] = config
        report = await orchestrator.sync()
        assert report.deleted == 0
        assert (await repositories.vms.find_by_id(100)).missing_count == 0

        cluster.remove_guest(100)
        report = await orchestrator.sync()
        assert report.deleted == 0
        assert await repositories.vms.exists(100)

    @pytest.mark.asyncio
    async def test_guest_migration_updates_node(self, cluster, orchestrator, repositories):
        """Test that a guest moving between nodes is an update, not delete plus create"""
        cluster.add_node("pve2")
        await orchestrator.sync()

        entry = cluster.guests[("pve1", ResourceType.VM)].pop(100)
        cluster.guests[("pve2", ResourceType.VM)][100] = entry
        report = await orchestrator.sync()

        assert report.updated == 1
        assert report.deleted == 0
        vm = await repositories.vms.find_by_id(100)
        assert vm.node_id == "pve2"

    @pytest.mark.asyncio
    async def test_containers_and_storage(self, cluster, orchestrator, repositories):
        """Test discovery of containers and multi-node storage"""
        cluster.add_node("pve2")
        cluster.add_container("pve2", 200, "dns")
        cluster.add_storage("local", ["pve1", "pve2"])
        cluster.add_storage("nfs-backup", ["pve1", "pve2"], storage_type="nfs", content="backup", shared=True)

        report = await orchestrator.sync()

        assert report.status == SyncStatus.SUCCESS
        assert report.by_type["container"] == {"discovered": 1}
        assert report.by_type["storage"] == {"discovered": 2}

        container = await repositories.containers.find_by_id(200)
        assert container.hostname == "dns"
        assert container.os_template == "debian"
        assert container.swap_bytes == 512 * 1024 * 1024

        pool = await repositories.storage.find_by_id("nfs-backup")
        assert pool.type == "nfs"
        assert pool.shared is True
        assert pool.content_types == ["backup"]
        assert pool.accessible_nodes == ["pve1", "pve2"]
        assert pool.config == {"type": "nfs", "content": "backup", "path": "/var/lib/nfs-backup",
                               "shared": True, "disable": False}

        again = await orchestrator.sync()
        assert again.unchanged == 7

    @pytest.mark.asyncio
    async def test_storage_usage_is_not_drift(self, cluster, orchestrator):
        """Test that used/available bytes changing alone is not an update"""
        cluster.add_storage("local", ["pve1"])
        await orchestrator.sync()

        cluster.node_storage["pve1"]["local"]["used"] += 1024
        cluster.node_storage["pve1"]["local"]["avail"] -= 1024
        report = await orchestrator.sync()

        assert report.updated == 0

    @pytest.mark.asyncio
    async def test_node_removed_from_cluster(self, cluster, orchestrator, repositories):
        """Test that a node missing from the listing is deleted after the grace window"""
        cluster.add_node("pve2")
        await orchestrator.sync()

        del cluster.nodes["pve2"]
        await orchestrator.sync()
        assert await repositories.nodes.exists("pve2")

        report = await orchestrator.sync()
        assert report.by_type["node"]["deleted"] == 1
        assert await repositories.nodes.ids() == ["pve1"]


class TestFailureHandling:
    """Partial failures, fatal errors and retry behaviour"""

    @pytest.mark.asyncio
    async def test_unreachable_node_is_isolated(self, cluster, orchestrator, repositories):
        """Test that node B failing does not affect node A"""
        cluster.add_node("pve2")
        cluster.add_vm("pve2", 300, "mail")
        await orchestrator.sync()

        cluster.set_vm_memory(100, 8192)
        cluster.remove_guest(300)
        cluster.fail("get_node_status", TransientAPIError("connect timeout"), node="pve2")

        for _ in range(3):
            report = await orchestrator.sync()
            assert report.status == SyncStatus.PARTIAL
            assert [e.node for e in report.node_errors] == ["pve2"]
            assert report.node_errors[0].error_code == "TRANSIENT_API_ERROR"
            assert report.exit_code == 1

        # pve1 changes were applied; pve2 guests are never counted missing
        assert (await repositories.vms.find_by_id(100)).memory_bytes == 8192 * 1024 * 1024
        vm = await repositories.vms.find_by_id(300)
        assert vm.missing_count == 0

    @pytest.mark.asyncio
    async def test_offline_node_is_recorded(self, cluster, orchestrator, repositories):
        """Test that an offline node is a node error and its status is persisted"""
        cluster.add_node("pve2")
        cluster.add_vm("pve2", 300, "mail")
        await orchestrator.sync()

        cluster.nodes["pve2"]["status"] = "offline"
        report = await orchestrator.sync()

        assert report.status == SyncStatus.PARTIAL
        assert [e.node for e in report.node_errors] == ["pve2"]
        node = await repositories.nodes.find_by_id("pve2")
        assert node.status == "offline"
        # Version is kept while the node cannot report it
        assert node.version == "8.1.4"
        assert await repositories.vms.exists(300)

    @pytest.mark.asyncio
    async def test_resource_failure_is_isolated(self, cluster, orchestrator, repositories):
        """Test that one guest failing to fetch is recorded and the rest succeed"""
        await orchestrator.sync()
        cluster.set_vm_memory(100, 1024)
        cluster.fail("get_guest_config", APIRequestError("config locked"), node="pve1", times=1)
        cluster.set_vm_memory(101, 1024)

        report = await orchestrator.sync()

        assert report.status == SyncStatus.PARTIAL
        assert len(report.errors) == 1
        assert report.errors[0].resource_type == ResourceType.VM
        assert report.errors[0].error_code == "API_REQUEST_ERROR"
        assert report.updated == 1

    @pytest.mark.asyncio
    async def test_unfetchable_guest_is_not_counted_missing(self, cluster, orchestrator, repositories):
        """Test that a listed guest whose details fail keeps its grace window"""
        await orchestrator.sync()
        cluster.fail("get_guest_status", APIRequestError("gone"), node="pve1")

        for _ in range(3):
            await orchestrator.sync()

        assert await repositories.vms.ids() == [100, 101]

    @pytest.mark.asyncio
    async def test_fatal_error_aborts(self, cluster, orchestrator, repositories):
        """Test that an authentication failure aborts the pass"""
        cluster.fail("list_nodes", FatalAPIError("invalid token", status_code=401))

        with pytest.raises(FatalAPIError):
            await orchestrator.sync()

        assert orchestrator.last_report.status == SyncStatus.FAILED
        assert orchestrator.last_report.exit_code == 2
        assert cluster.call_count("list_nodes") == 1
        assert await repositories.nodes.count() == 0

    @pytest.mark.asyncio
    async def test_fatal_error_mid_pass_aborts(self, cluster, orchestrator):
        """Test that a fatal error from a guest call aborts the whole pass"""
        cluster.fail("get_guest_config", FatalAPIError("permission denied", status_code=403))

        with pytest.raises(FatalAPIError):
            await orchestrator.sync()

        assert orchestrator.last_report.status == SyncStatus.FAILED
        assert not orchestrator.is_syncing

    @pytest.mark.asyncio
    async def test_node_listing_failure_fails_pass(self, cluster, orchestrator, repositories):
        """Test that losing the node listing fails the pass without missing detection"""
        await orchestrator.sync()
        cluster.fail("list_nodes", TransientAPIError("503"))

        for _ in range(3):
            report = await orchestrator.sync()
            assert report.status == SyncStatus.FAILED

        assert await repositories.vms.ids() == [100, 101]
        assert (await repositories.vms.find_by_id(100)).missing_count == 0

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried_with_backoff(self, cluster, repositories):
        """Test retry count and exponential delays for transient failures"""
        orchestrator = SyncOrchestrator(
            cluster, repositories, worker_pool_size=2, retry_attempts=3, retry_base_delay=0.5
        )
        cluster.fail("get_node_status", TransientAPIError("502"), node="pve1", times=2)

        with patch("apps.backend.src.services.sync_service.asyncio.sleep", new_callable=AsyncMock) as sleep:
            report = await orchestrator.sync()

        assert report.status == SyncStatus.SUCCESS
        assert cluster.call_count("get_node_status") == 3
        assert sleep.await_args_list == [call(0.5), call(1.0)]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, cluster, repositories):
        """Test that a persistently failing call stops after the attempt limit"""
        orchestrator = SyncOrchestrator(
            cluster, repositories, worker_pool_size=2, retry_attempts=2, retry_base_delay=0
        )
        cluster.fail("get_guest_status", TransientAPIError("timeout"), node="pve1")

        report = await orchestrator.sync()

        assert report.status == SyncStatus.PARTIAL
        assert len(report.errors) == 2
        assert all(e.attempts == 2 for e in report.errors)
        assert cluster.call_count("get_guest_status") == 4

    @pytest.mark.asyncio
    async def test_request_errors_are_not_retried(self, cluster, orchestrator):
        """Test that per-request errors fail immediately"""
        cluster.fail("get_guest_status", APIRequestError("bad vmid", status_code=400), node="pve1")

        report = await orchestrator.sync()

        assert cluster.call_count("get_guest_status") == 2
        assert all(e.attempts == 1 for e in report.errors)


class TestScopedSync:
    """Node, type and single-resource scopes"""

    @pytest.mark.asyncio
    async def test_type_scope_skips_missing_detection(self, cluster, orchestrator, repositories):
        """Test that a scoped pass never advances the grace window"""
        await orchestrator.sync()
        cluster.remove_guest(100)

        for _ in range(3):
            report = await orchestrator.sync(SyncScope(resource_type=ResourceType.VM))
            assert report.status == SyncStatus.SUCCESS

        assert (await repositories.vms.find_by_id(100)).missing_count == 0
        assert cluster.call_count("list_node_storage") == 1
        assert cluster.call_count("list_tasks") == 1

    @pytest.mark.asyncio
    async def test_node_scope(self, cluster, orchestrator, repositories):
        """Test a pass limited to one node"""
        cluster.add_node("pve2")
        cluster.add_vm("pve2", 300, "mail")

        report = await orchestrator.sync(SyncScope(node="pve2"))

        assert report.created == 2
        assert await repositories.nodes.ids() == ["pve2"]
        assert await repositories.vms.ids() == [300]

    @pytest.mark.asyncio
    async def test_unknown_node_scope(self, cluster, orchestrator):
        """Test a node scope naming a node absent from the listing"""
        report = await orchestrator.sync(SyncScope(node="pve9"))

        assert report.status == SyncStatus.PARTIAL
        assert report.node_errors[0].node == "pve9"

    @pytest.mark.asyncio
    async def test_single_resource_sync(self, cluster, orchestrator, repositories):
        """Test a targeted re-sync of one guest"""
        await orchestrator.sync()
        cluster.set_vm_memory(101, 3072)
        calls_before = cluster.call_count("get_guest_config")

        report = await orchestrator.sync(SyncScope(resource_type=ResourceType.VM, resource_id="101"))

        assert report.updated == 1
        assert cluster.call_count("get_guest_config") == calls_before + 1
        assert (await repositories.vms.find_by_id(101)).config["memory"] == 3072

    @pytest.mark.asyncio
    async def test_single_resource_absent(self, cluster, orchestrator, repositories):
        """Test that a targeted re-sync of an absent guest reports it without deleting"""
        await orchestrator.sync()
        cluster.remove_guest(100)

        report = await orchestrator.sync_resource(ResourceType.VM, 100)

        assert report.status == SyncStatus.PARTIAL
        assert report.errors[0].error_code == "RESOURCE_NOT_FOUND"
        assert await repositories.vms.exists(100)

        confirmed = await orchestrator.sync_resource(ResourceType.VM, 100, expect_deleted=True)
        assert confirmed.deleted == 1
        assert not await repositories.vms.exists(100)

    @pytest.mark.asyncio
    async def test_single_storage_and_node(self, cluster, orchestrator, repositories):
        """Test targeted re-sync of storage and of a node"""
        cluster.add_storage("local-zfs", ["pve1"], storage_type="zfspool", content="images")

        node_report = await orchestrator.sync_resource(ResourceType.NODE, "pve1")
        storage_report = await orchestrator.sync_resource(ResourceType.STORAGE, "local-zfs")

        assert storage_report.created == 1
        assert node_report.created == 1
        assert (await repositories.storage.find_by_id("local-zfs")).type == "zfspool"



class TestStorageObservation:
    """Pools seen through a subset of nodes or without their definitions"""

    @pytest.fixture
    def two_nodes(self, cluster):
        cluster.add_node("pve2")
        cluster.add_storage("nfs-backup", ["pve1", "pve2"], storage_type="nfs", content="backup", shared=True)
        cluster.add_storage("local", ["pve1", "pve2"], total=100 * GIB)
        cluster.node_storage["pve2"]["local"].update(total=200 * GIB, used=50 * GIB, avail=150 * GIB)
        return cluster

    @pytest.mark.asyncio
    async def test_definitions_outage_is_partial_without_updates(self, two_nodes, orchestrator, repositories):
        """Test that pools are only marked seen while the cluster definitions are unavailable"""
        await orchestrator.sync()
        two_nodes.fail("list_storage_config", APIRequestError("storage.cfg locked"))

        report = await orchestrator.sync()

        assert report.status == SyncStatus.PARTIAL
        assert [(e.resource_type, e.resource_id) for e in report.errors] == [(ResourceType.STORAGE, "*")]
        assert "storage" not in report.by_type
        pool = await repositories.storage.find_by_id("nfs-backup")
        assert pool.content_types == ["backup"]
        assert pool.config["path"] == "/var/lib/nfs-backup"
        assert pool.missing_count == 0
        assert len(await repositories.snapshots.history(ResourceType.STORAGE, "nfs-backup")) == 1

        del two_nodes.failures[("list_storage_config", None)]
        recovered = await orchestrator.sync()
        assert recovered.status == SyncStatus.SUCCESS
        assert recovered.by_type["storage"] == {"unchanged": 2}

    @pytest.mark.asyncio
    async def test_node_scope_keeps_shared_pool_membership(self, two_nodes, orchestrator, repositories):
        """Test that a node-scoped pass does not drop nodes outside its scope"""
        await orchestrator.sync()

        report = await orchestrator.sync(SyncScope(node="pve2"))

        assert report.updated == 0
        pool = await repositories.storage.find_by_id("nfs-backup")
        assert pool.accessible_nodes == ["pve1", "pve2"]

    @pytest.mark.asyncio
    async def test_targeted_storage_sync_keeps_membership(self, two_nodes, orchestrator, repositories):
        """Test that a targeted re-sync through one node keeps the other nodes"""
        await orchestrator.sync()

        report = await orchestrator.sync_resource(ResourceType.STORAGE, "nfs-backup", node="pve1")

        assert report.updated == 0
        assert report.unchanged == 1
        pool = await repositories.storage.find_by_id("nfs-backup")
        assert pool.accessible_nodes == ["pve1", "pve2"]

    @pytest.mark.asyncio
    async def test_local_pool_capacity_with_node_unobserved(self, two_nodes, orchestrator, repositories):
        """Test that a node-local pool keeps its capacity while one of its nodes cannot report"""
        await orchestrator.sync()
        assert (await repositories.storage.find_by_id("local")).total_bytes == 200 * GIB

        two_nodes.fail("list_node_storage", APIRequestError("pvestatd stalled"), node="pve2")
        report = await orchestrator.sync()

        assert "updated" not in report.by_type["storage"]
        pool = await repositories.storage.find_by_id("local")
        assert pool.total_bytes == 200 * GIB
        assert pool.accessible_nodes == ["pve1", "pve2"]

    @pytest.mark.asyncio
    async def test_pool_removed_from_reporting_node(self, two_nodes, orchestrator, repositories):
        """Test that a node which reports without the pool leaves its node set"""
        await orchestrator.sync()

        del two_nodes.node_storage["pve2"]["local"]
        report = await orchestrator.sync()

        assert report.by_type["storage"]["updated"] == 1
        pool = await repositories.storage.find_by_id("local")
        assert pool.accessible_nodes == ["pve1"]
        assert pool.total_bytes == 100 * GIB


class TestTaskReconciliation:
    """Full passes reconcile the task table with each node's task log"""

    @pytest.mark.asyncio
    async def test_timed_out_task_gets_real_outcome(self, cluster, orchestrator, task_monitor, repositories):
        """Test that a task that timed out locally is finished by the next full pass"""
        await orchestrator.sync()
        cluster.task_script = ["running"]
        handle = await task_monitor.submit(
            {"operation": "shutdown", "resource_type": "vm", "node": "pve1", "resource_id": 100}
        )
        assert (await task_monitor.await_task(handle, timeout=0.05)).status == TaskStatus.TIMEOUT

        cluster.task_states[handle.upid] = ["OK"]
        report = await orchestrator.sync()

        assert report.by_type["task"] == {"updated": 1}
        task = await repositories.tasks.find_by_id(handle.upid)
        assert task.status == "ok"
        assert task.exit_status == "OK"
        latest = await repositories.snapshots.latest(ResourceType.TASK, handle.upid)
        assert latest.change_type == "updated"

        again = await orchestrator.sync()
        assert again.by_type["task"] == {"unchanged": 1}

    @pytest.mark.asyncio
    async def test_remote_task_is_discovered(self, cluster, orchestrator, repositories):
        """Test that tasks started outside the engine are recorded once"""
        upid = "UPID:pve1:0000B001:00000001:6A1F0000:vzdump::root@pam:"
        cluster.remote_tasks["pve1"] = [
            {"upid": upid, "node": "pve1", "type": "vzdump", "user": "root@pam",
             "starttime": 1792314000, "endtime": 1792314600, "status": "OK"}
        ]

        report = await orchestrator.sync()
        again = await orchestrator.sync()

        assert report.by_type["task"] == {"discovered": 1}
        assert again.by_type["task"] == {"unchanged": 1}
        task = await repositories.tasks.find_by_id(upid)
        assert task.status == "ok"
        assert task.resource_type is None
        assert (task.end_time - task.start_time).total_seconds() == 600

    @pytest.mark.asyncio
    async def test_task_list_failure_is_isolated(self, cluster, orchestrator, repositories):
        """Test that an unreadable task log is a resource error, not a node error"""
        cluster.fail("list_tasks", APIRequestError("permission check failed"), node="pve1")

        report = await orchestrator.sync()

        assert report.status == SyncStatus.PARTIAL
        assert report.node_errors == []
        assert [(e.resource_type, e.node) for e in report.errors] == [(ResourceType.TASK, "pve1")]
        assert await repositories.vms.ids() == [100, 101]


class TestConcurrencyControl:
    """Cancellation and the per-orchestrator advisory lock"""

    @pytest.mark.asyncio
    async def test_cancel_in_flight_sync(self, cluster, orchestrator, repositories):
        """Test cooperative cancellation of a running pass"""
        entered, release = cluster.block("list_guests")
        running = asyncio.create_task(orchestrator.sync())
        await asyncio.wait_for(entered.wait(), timeout=5)

        orchestrator.cancel()
        release.set()
        report = await asyncio.wait_for(running, timeout=5)

        assert report.status == SyncStatus.CANCELLED
        assert report.exit_code == 1
        assert await repositories.vms.count() == 0

    @pytest.mark.asyncio
    async def test_concurrent_full_sync_rejected(self, cluster, orchestrator):
        """Test that a second full sync on the same orchestrator is refused"""
        entered, release = cluster.block("list_nodes")
        running = asyncio.create_task(orchestrator.sync())
        await asyncio.wait_for(entered.wait(), timeout=5)

        assert orchestrator.is_syncing
        with pytest.raises(SyncInProgressError):
            await orchestrator.sync()

        release.set()
        report = await asyncio.wait_for(running, timeout=5)
        assert report.status == SyncStatus.SUCCESS
        assert not orchestrator.is_syncing

    @pytest.mark.asyncio
    async def test_independent_orchestrators_run_concurrently(self, cluster, orchestrator, tmp_path):
        """Test that orchestrators for different clusters do not share the lock"""
        other_api = type(cluster)()
        other_api.add_node("edge1")
        other_api.add_vm("edge1", 500, "router")

        engine = create_async_database_engine(f"sqlite+aiosqlite:///{tmp_path / 'other.db'}")
        await create_schema(engine)
        try:
            other = SyncOrchestrator(
                other_api, RepositoryRegistry(create_async_session_factory(engine)), retry_base_delay=0
            )
            entered, release = cluster.block("list_nodes")
            running = asyncio.create_task(orchestrator.sync())
            await asyncio.wait_for(entered.wait(), timeout=5)

            other_report = await other.sync()
            assert other_report.created == 2

            release.set()
            report = await asyncio.wait_for(running, timeout=5)
            assert report.created == 3
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_worker_pool_bounds_api_calls(self, cluster, repositories):
        """Test that no more than worker_pool_size API calls run at once"""
        for vmid in range(102, 112):
            cluster.add_vm("pve1", vmid, f"vm{vmid}")

        active = 0
        peak = 0
        original = cluster.get_guest_config

        async def tracked(*args):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await original(*args)

        cluster.get_guest_config = tracked
        orchestrator = SyncOrchestrator(cluster, repositories, worker_pool_size=3, retry_base_delay=0)

        report = await orchestrator.sync()

        assert report.created == 13
        assert peak <= 3

    @pytest.mark.asyncio
    async def test_sync_statistics(self, cluster, orchestrator):
        """Test inventory and snapshot statistics"""
        await orchestrator.sync()

        stats = await orchestrator.sync_statistics()

        assert stats["target"] == "pve-test"
        assert stats["is_syncing"] is False
        assert stats["resources"]["vm"] == 2
        assert stats["snapshots"]["by_change_type"] == {"discovered": 3}
        assert stats["last_sync"]["status"] == "success"
