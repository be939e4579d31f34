"""
Shared column layout for guests (virtual machines and containers).

Both guest kinds live in their own tables but follow the same lifecycle, so
their common columns are declared once here.
"""

from sqlalchemy import BigInteger, Boolean, Column, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from apps.backend.src.core.database import JSONType, UTCDateTime, utcnow


class GuestColumnsMixin:
    """Columns common to VirtualMachine and Container"""

    # Cluster-unique vmid, assigned by the hypervisor
    id = Column(Integer, primary_key=True, autoincrement=False)

    @declared_attr
    def node_id(cls) -> Mapped[str]:
        return mapped_column(
            String(255),
            ForeignKey("nodes.id", ondelete="RESTRICT", onupdate="CASCADE"),
            nullable=False,
            index=True,
        )

    name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, index=True)  # running, stopped, suspended
    template = Column(Boolean, nullable=False, default=False)

    # Compute
    cpu_cores = Column(Integer, nullable=True)
    cpu_usage = Column(Float, nullable=True)  # 0..1
    memory_bytes = Column(BigInteger, nullable=True)
    memory_usage = Column(BigInteger, nullable=True)

    # Disk and network counters
    disk_size = Column(BigInteger, nullable=True)
    disk_usage = Column(BigInteger, nullable=True)
    network_in = Column(BigInteger, nullable=True)
    network_out = Column(BigInteger, nullable=True)

    uptime = Column(BigInteger, nullable=True)
    ha_managed = Column(Boolean, nullable=False, default=False)
    lock_status = Column(String(64), nullable=True)

    # Normalized remote configuration and its digest
    config = Column(JSONType, nullable=True)
    config_digest = Column(String(64), nullable=True)
    missing_count = Column(Integer, nullable=False, default=0)
    last_seen = Column(UTCDateTime, nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def _guest_dict(self) -> dict:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "name": self.name,
            "status": self.status,
            "template": self.template,
            "cpu_cores": self.cpu_cores,
            "cpu_usage": self.cpu_usage,
            "memory_bytes": self.memory_bytes,
            "memory_usage": self.memory_usage,
            "disk_size": self.disk_size,
            "disk_usage": self.disk_usage,
            "network_in": self.network_in,
            "network_out": self.network_out,
            "uptime": self.uptime,
            "ha_managed": self.ha_managed,
            "lock_status": self.lock_status,
            "config": self.config,
            "config_digest": self.config_digest,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }
