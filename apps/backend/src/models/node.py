"""
Node model: a cluster member and the root of the resource topology.
"""

from sqlalchemy import BigInteger, Column, Float, Integer, String

from apps.backend.src.core.database import Base, UTCDateTime, utcnow


class Node(Base):
    """Cluster node registry table"""

    __tablename__ = "nodes"

    # Cluster-unique node name
    id = Column(String(255), primary_key=True)

    status = Column(String(20), nullable=False, default="online", index=True)  # online, offline

    # Capacity and usage
    cpu_usage = Column(Float, nullable=True)  # 0..1
    cpu_max = Column(Integer, nullable=True)
    memory_usage = Column(BigInteger, nullable=True)
    memory_max = Column(BigInteger, nullable=True)
    uptime = Column(BigInteger, nullable=True)  # seconds

    version = Column(String(64), nullable=True)

    # Change detection bookkeeping
    config_digest = Column(String(64), nullable=True)
    missing_count = Column(Integer, nullable=False, default=0)
    last_seen = Column(UTCDateTime, nullable=True, index=True)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Node(id='{self.id}', status='{self.status}', version='{self.version}')>"

    def to_dict(self) -> dict:
        """Convert model instance to dictionary for serialization."""
        return {
            "id": self.id,
            "status": self.status,
            "cpu_usage": self.cpu_usage,
            "cpu_max": self.cpu_max,
            "memory_usage": self.memory_usage,
            "memory_max": self.memory_max,
            "uptime": self.uptime,
            "version": self.version,
            "config_digest": self.config_digest,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }
