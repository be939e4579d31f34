"""
Container (LXC guest) model.
"""

from sqlalchemy import BigInteger, Column, String

from apps.backend.src.core.database import Base
from apps.backend.src.models.guest import GuestColumnsMixin


class Container(GuestColumnsMixin, Base):
    """Container registry table"""

    __tablename__ = "containers"

    hostname = Column(String(255), nullable=True)
    swap_bytes = Column(BigInteger, nullable=True)
    swap_usage = Column(BigInteger, nullable=True)
    os_template = Column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Container(id={self.id}, node_id='{self.node_id}', status='{self.status}')>"

    def to_dict(self) -> dict:
        data = self._guest_dict()
        data.update(
            {
                "hostname": self.hostname,
                "swap_bytes": self.swap_bytes,
                "swap_usage": self.swap_usage,
                "os_template": self.os_template,
            }
        )
        return data
