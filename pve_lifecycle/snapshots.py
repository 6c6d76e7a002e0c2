"""
Single-slot snapshot retention: one snapshot per VM, named after the time
it was taken.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from pve_lifecycle.exceptions import NoSnapshotError
from pve_lifecycle.models import VM, Snapshot

logger = logging.getLogger(__name__)

# Other tooling parses snapshot names in this format; keep it stable.
SNAPSHOT_NAME_FORMAT = '%m-%d-%Y-%H-%M'


def snapshot_name(moment: datetime) -> str:
    return moment.strftime(SNAPSHOT_NAME_FORMAT)


class SnapshotManager:
    """Create, replace and revert the retained snapshot of a VM."""

    def __init__(self, client, clock: Callable[[], datetime] = datetime.now):
        self.client = client
        self.clock = clock

    def latest(self, vm: VM) -> Optional[Snapshot]:
        """Return the most recently created snapshot, or None."""
        snapshots = sorted(self.client.list_snapshots(vm), key=lambda s: s.created, reverse=True)
        return snapshots[0] if snapshots else None

    def create(self, vm: VM) -> Snapshot:
        name = snapshot_name(self.clock())

        previous = self.latest(vm)
        if previous is not None:
            logger.info("Deleting previous snapshot %s of VM %s", previous.name, vm)
            self.client.delete_snapshot(previous)

        logger.info("Creating snapshot %s of VM %s", name, vm)
        return self.client.create_snapshot(vm, name)

    def revert(self, vm: VM) -> Snapshot:
        snapshot = self.latest(vm)
        if snapshot is None:
            raise NoSnapshotError(vm.name)

        logger.info("Reverting VM %s to snapshot %s", vm, snapshot.name)
        self.client.revert_to_snapshot(vm, snapshot)
        return snapshot
