"""
Task model: one asynchronous operation issued against the hypervisor API.
"""

from sqlalchemy import Column, ForeignKey, Index, String

from apps.backend.src.core.database import Base, JSONType, UTCDateTime, utcnow


class Task(Base):
    """Asynchronous remote operation tracking table"""

    __tablename__ = "tasks"

    # Opaque UPID issued by the API
    upid = Column(String(512), primary_key=True)

    node_id = Column(
        String(255),
        ForeignKey("nodes.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )

    type = Column(String(64), nullable=False)  # qmcreate, qmstart, vzstop, ...
    status = Column(String(16), nullable=False, index=True)  # pending, running, ok, error, timeout

    resource_type = Column(String(16), nullable=True)
    resource_id = Column(String(64), nullable=True)
    user = Column(String(128), nullable=True)

    start_time = Column(UTCDateTime, nullable=True)
    end_time = Column(UTCDateTime, nullable=True)
    exit_status = Column(String(512), nullable=True)
    log = Column(JSONType, nullable=False, default=list)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_tasks_resource", "resource_type", "resource_id"),
    )

    def __repr__(self) -> str:
        return f"<Task(upid='{self.upid}', type='{self.type}', status='{self.status}')>"

    def to_dict(self) -> dict:
        return {
            "upid": self.upid,
            "node_id": self.node_id,
            "type": self.type,
            "status": self.status,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "user": self.user,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "exit_status": self.exit_status,
            "log": list(self.log or []),
        }
