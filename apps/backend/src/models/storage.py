"""
Storage pool model. Storage is cluster-scoped and not owned by a single node.
"""

from sqlalchemy import BigInteger, Boolean, Column, Integer, String

from apps.backend.src.core.database import Base, JSONType, UTCDateTime, utcnow


class Storage(Base):
    """Storage pool registry table"""

    __tablename__ = "storage"

    id = Column(String(255), primary_key=True)
    type = Column(String(32), nullable=False, index=True)  # dir, lvm, lvmthin, zfspool, nfs, ...

    content_types = Column(JSONType, nullable=False, default=list)  # sorted list of content kinds
    enabled = Column(Boolean, nullable=False, default=True)
    shared = Column(Boolean, nullable=False, default=False)

    total_bytes = Column(BigInteger, nullable=True)
    used_bytes = Column(BigInteger, nullable=True)
    available_bytes = Column(BigInteger, nullable=True)

    path = Column(String(1024), nullable=True)
    accessible_nodes = Column(JSONType, nullable=False, default=list)  # sorted node ids

    config = Column(JSONType, nullable=True)
    config_digest = Column(String(64), nullable=True)
    missing_count = Column(Integer, nullable=False, default=0)
    last_seen = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Storage(id='{self.id}', type='{self.type}', shared={self.shared})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "content_types": list(self.content_types or []),
            "enabled": self.enabled,
            "shared": self.shared,
            "total_bytes": self.total_bytes,
            "used_bytes": self.used_bytes,
            "available_bytes": self.available_bytes,
            "path": self.path,
            "accessible_nodes": list(self.accessible_nodes or []),
            "config": self.config,
            "config_digest": self.config_digest,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }
