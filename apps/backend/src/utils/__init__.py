"""
Utilities: the hypervisor HTTP client, field-level diffs and shared
transaction helpers.
"""

from .database_utils import database_session, validate_input
from .diff_generator import DiffGenerator, canonical_json
from .proxmox_client import HypervisorAPI, ProxmoxClient, build_token_header

__all__ = [
    "HypervisorAPI",
    "ProxmoxClient",
    "build_token_header",
    "DiffGenerator",
    "canonical_json",
    "database_session",
    "validate_input",
]
