"""
Common Pydantic schemas and enumerations used across the application.
"""

from enum import Enum

from pydantic import BaseModel, Field


class ResourceType(str, Enum):
    """Kinds of resources tracked in the state store"""

    NODE = "node"
    VM = "vm"
    CONTAINER = "container"
    STORAGE = "storage"
    TASK = "task"


class ChangeType(str, Enum):
    """Classification recorded on every state snapshot"""

    CREATED = "created"
    DISCOVERED = "discovered"
    UPDATED = "updated"
    DELETED = "deleted"


class NodeStatus(str, Enum):
    """Node status enumeration"""

    ONLINE = "online"
    OFFLINE = "offline"


class GuestStatus(str, Enum):
    """Virtual machine and container status enumeration"""

    RUNNING = "running"
    STOPPED = "stopped"
    SUSPENDED = "suspended"


class StorageType(str, Enum):
    """Storage backend types understood by the hypervisor"""

    DIR = "dir"
    LVM = "lvm"
    LVMTHIN = "lvmthin"
    ZFS = "zfs"
    ZFSPOOL = "zfspool"
    NFS = "nfs"
    CIFS = "cifs"
    GLUSTERFS = "glusterfs"
    CEPHFS = "cephfs"
    RBD = "rbd"
    ISCSI = "iscsi"
    ISCSIDIRECT = "iscsidirect"
    BTRFS = "btrfs"
    PBS = "pbs"
    ESXI = "esxi"


class TaskStatus(str, Enum):
    """Lifecycle states of an asynchronous remote operation"""

    PENDING = "pending"
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.OK, TaskStatus.ERROR, TaskStatus.TIMEOUT)


class PaginationParams(BaseModel):
    """Pagination parameters for list queries"""

    page: int = Field(default=1, ge=1, description="Page number (starts from 1)")
    page_size: int = Field(default=50, ge=1, le=1000, description="Number of items per page")

    @property
    def offset(self) -> int:
        """Calculate offset for database queries"""
        return (self.page - 1) * self.page_size
