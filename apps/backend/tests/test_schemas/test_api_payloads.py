"""
Tests for hypervisor API payload models and their mapping into repository inputs.
"""

from datetime import UTC, datetime

from apps.backend.src.schemas.common import GuestStatus, ResourceType, TaskStatus
from apps.backend.src.schemas.proxmox import (
    ApiGuest,
    ApiGuestStatus,
    ApiNode,
    ApiNodeStatus,
    ApiNodeStorage,
    ApiStorageConfig,
    ApiTaskListEntry,
    build_container,
    build_node,
    build_storage,
    build_task,
    build_vm,
)

SEEN = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


class TestNodes:
    def test_version_extraction(self):
        assert ApiNodeStatus(pveversion="pve-manager/8.1.4/ec5affc9e41f1d79").version == "8.1.4"
        assert ApiNodeStatus(pveversion="8.0").version == "8.0"
        assert ApiNodeStatus().version is None

    def test_build_online_node(self):
        """Test mapping a listed node with detail"""
        entry = ApiNode(node="pve1", status="online", cpu=1.7, maxmem=64 << 30, uptime=3600, level="")
        status = ApiNodeStatus.model_validate(
            {"pveversion": "pve-manager/8.1.4/x", "cpuinfo": {"cpus": 16, "model": "EPYC"}}
        )

        node = build_node(entry, status, SEEN)

        assert node.status == "online"
        assert node.cpu_usage == 1.0
        assert node.cpu_max == 16
        assert node.memory_max == 64 << 30
        assert node.version == "8.1.4"
        assert node.last_seen == SEEN

    def test_build_offline_node(self):
        """Test a node that could not be queried"""
        node = build_node(ApiNode(node="pve2", status="offline"), None, SEEN)

        assert node.status == "offline"
        assert node.version is None
        assert node.cpu_max is None


class TestGuests:
    def test_guest_status_mapping(self):
        """Test run state derivation"""
        assert ApiGuestStatus(status="running").guest_status == GuestStatus.RUNNING
        assert ApiGuestStatus(status="running", qmpstatus="paused").guest_status == GuestStatus.SUSPENDED
        assert ApiGuestStatus(status="stopped").guest_status == GuestStatus.STOPPED
        assert ApiGuestStatus(status="unknown").guest_status == GuestStatus.STOPPED

    def test_build_vm(self):
        """Test mapping listing, status and config into a VM"""
        entry = ApiGuest.model_validate(
            {"vmid": 100, "name": "web", "status": "running", "cpus": 2, "maxmem": 2 << 30,
             "cpu": 0.05, "netin": 10, "diskread": 99}
        )
        status = ApiGuestStatus.model_validate(
            {"status": "running", "pid": 4242, "ha": {"managed": 1, "state": "started"}}
        )

        vm = build_vm("pve1", entry, status, {"memory": 2048, "cores": 2, "digest": "d"}, SEEN)

        assert vm.id == 100
        assert vm.node_id == "pve1"
        assert vm.status == "running"
        assert vm.pid == 4242
        assert vm.ha_managed is True
        assert vm.cpu_cores == 2
        assert vm.config == {"memory": 2048, "cores": 2, "digest": "d"}

    def test_build_vm_falls_back_to_config(self):
        """Test cores and template taken from the configuration"""
        entry = ApiGuest(vmid=9000)
        vm = build_vm("pve1", entry, ApiGuestStatus(), {"cores": "4", "template": 1, "name": "tpl"}, SEEN)

        assert vm.cpu_cores == 4
        assert vm.template is True
        assert vm.name == "tpl"
        assert vm.status == "stopped"

    def test_build_container(self):
        """Test container specific fields"""
        entry = ApiGuest(vmid=200, maxswap=512 << 20, swap=0, status="running")
        container = build_container(
            "pve1", entry, ApiGuestStatus(status="running"),
            {"hostname": "dns", "ostype": "debian", "memory": 512}, SEEN,
        )

        assert container.hostname == "dns"
        assert container.name == "dns"
        assert container.os_template == "debian"
        assert container.swap_bytes == 512 << 20


class TestStorage:
    def test_merge_reports(self):
        """Test merging per-node reports with the cluster definition"""
        reports = {
            "pve2": ApiNodeStorage(storage="local", type="dir", total=200, used=20, avail=180),
            "pve1": ApiNodeStorage(storage="local", type="dir", total=100, used=10, avail=90),
        }
        definition = ApiStorageConfig.model_validate(
            {"storage": "local", "type": "dir", "content": "rootdir,images,iso",
             "path": "/var/lib/vz", "digest": "abc", "shared": 0}
        )

        storage = build_storage("local", reports, definition, SEEN)

        assert storage.accessible_nodes == ["pve1", "pve2"]
        # Capacity comes from the largest report, independent of which nodes answered
        assert storage.total_bytes == 200
        assert storage.used_bytes == 20
        assert storage.content_types == ["images", "iso", "rootdir"]
        assert storage.enabled is True
        assert storage.path == "/var/lib/vz"
        assert "digest" not in storage.config
        assert storage.config["content"] == "rootdir,images,iso"

    def test_merge_without_definition(self):
        """Test a pool only reported by nodes"""
        reports = {"pve1": ApiNodeStorage(storage="tank", type="zfspool", content="images", shared=False)}

        storage = build_storage("tank", reports, None, SEEN, extra_nodes=["pve3"])

        assert storage.type == "zfspool"
        assert storage.accessible_nodes == ["pve1", "pve3"]
        assert storage.config is None

    def test_capacity_independent_of_reporting_order(self):
        """Test that losing the alphabetically first node does not change capacity"""
        big = ApiNodeStorage(storage="local", type="dir", total=200, used=20, avail=180)
        small = ApiNodeStorage(storage="local", type="dir", total=100, used=10, avail=90)

        both = build_storage("local", {"pve1": small, "pve2": big}, None, SEEN)
        without_first = build_storage("local", {"pve2": big}, None, SEEN, extra_nodes=["pve1"])

        assert both.total_bytes == without_first.total_bytes == 200
        assert without_first.accessible_nodes == ["pve1", "pve2"]


class TestTasks:
    def test_finished_guest_task(self):
        """Test mapping a finished guest task from the node task list"""
        entry = ApiTaskListEntry.model_validate(
            {"upid": "UPID:pve1:0000A000:00000001:6A1F0000:qmstart:100:root@pam:", "node": "pve1",
             "type": "qmstart", "id": "100", "user": "root@pam", "starttime": 1792314000,
             "endtime": 1792314005, "status": "OK"}
        )

        task = build_task(entry)

        assert task.status == TaskStatus.OK
        assert task.resource_type == ResourceType.VM
        assert task.resource_id == "100"
        assert task.exit_status == "OK"
        assert (task.end_time - task.start_time).total_seconds() == 5

    def test_running_and_failed_tasks(self):
        """Test that a missing endtime means running and any other exit is an error"""
        running = ApiTaskListEntry(upid="UPID:a", node="pve1", type="vzdump", starttime=1792314000)
        failed = ApiTaskListEntry(
            upid="UPID:b", node="pve1", type="vzcreate", id="200", endtime=1792314009,
            status="command 'lxc-start' failed",
        )

        assert build_task(running).status == TaskStatus.RUNNING
        assert build_task(running).exit_status is None
        assert build_task(running).resource_type is None
        assert build_task(failed).status == TaskStatus.ERROR
        assert build_task(failed).resource_type == ResourceType.CONTAINER
