"""Persistent state: volumes, checkpoints and the attempt ledger."""

from swapguard.storage.ledger import AttemptLedger
from swapguard.storage.volumes import VolumeManager

__all__ = [
    "AttemptLedger",
    "VolumeManager",
]
