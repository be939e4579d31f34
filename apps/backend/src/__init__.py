"""
Proxmox State Sync

Resource state synchronization and repository engine: discovers cluster nodes,
virtual machines, containers and storage from the hypervisor management API,
keeps a relational store consistent with them and records every change in an
append-only snapshot log.
"""

__version__ = "1.0.0-dev"
__author__ = "Infrastructure Management Team"
__description__ = "Proxmox resource state synchronization engine"
