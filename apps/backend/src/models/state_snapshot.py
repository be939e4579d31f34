"""
State snapshot model: the append-only audit log of resource state.

Rows are written once per change classification and never mutated; history
queries walk the (resource_type, resource_id, snapshot_time) index.
"""

from sqlalchemy import BigInteger, Column, Index, Integer, String

from apps.backend.src.core.database import Base, JSONType, UTCDateTime, utcnow


class StateSnapshot(Base):
    """Immutable, classified record of a resource's state at one point in time"""

    __tablename__ = "state_snapshots"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    snapshot_time = Column(UTCDateTime, nullable=False)
    resource_type = Column(String(16), nullable=False)  # node, vm, container, storage, task
    resource_id = Column(String(512), nullable=False)

    # Serialized state; "updated" rows also carry the field-level diff
    resource_data = Column(JSONType, nullable=False)

    change_type = Column(String(16), nullable=False, index=True)  # created, discovered, updated, deleted

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "ix_state_snapshots_resource_history",
            "resource_type",
            "resource_id",
            "snapshot_time",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<StateSnapshot(id={self.id}, resource='{self.resource_type}:{self.resource_id}', "
            f"change_type='{self.change_type}', snapshot_time={self.snapshot_time})>"
        )

    def to_dict(self) -> dict:
        """Convert model instance to dictionary for serialization."""
        return {
            "id": self.id,
            "snapshot_time": self.snapshot_time.isoformat() if self.snapshot_time else None,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "resource_data": self.resource_data,
            "change_type": self.change_type,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
