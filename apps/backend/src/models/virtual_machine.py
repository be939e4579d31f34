"""
Virtual machine (QEMU guest) model.
"""

from sqlalchemy import Column, Integer

from apps.backend.src.core.database import Base
from apps.backend.src.models.guest import GuestColumnsMixin


class VirtualMachine(GuestColumnsMixin, Base):
    """Virtual machine registry table"""

    __tablename__ = "vms"

    pid = Column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<VirtualMachine(id={self.id}, node_id='{self.node_id}', status='{self.status}')>"

    def to_dict(self) -> dict:
        data = self._guest_dict()
        data["pid"] = self.pid
        return data
