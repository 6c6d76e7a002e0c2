"""Batch VM lifecycle actions (start, stop, suspend, reset, snapshot, revert) for a Proxmox lab."""

__version__ = '0.1.0'
