"""
State Store Models

This package contains the SQLAlchemy ORM models for the synchronized
resource inventory and its append-only snapshot log.
"""

from .container import Container
from .node import Node
from .state_snapshot import StateSnapshot
from .storage import Storage
from .task import Task
from .virtual_machine import VirtualMachine

__all__ = [
    "Node",
    "VirtualMachine",
    "Container",
    "Storage",
    "Task",
    "StateSnapshot",
]
