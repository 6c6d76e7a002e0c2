"""
Exception hierarchy for lab lifecycle operations.

Only NoSessionError stops a batch; everything else is scoped to one VM and
recorded in that VM's result.
"""

from typing import List, Optional


class LifecycleError(Exception):
    """Base exception for all lifecycle errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class NoSessionError(LifecycleError):
    """No control-plane session was requested and none is available."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message or 'No active Proxmox session. Pass --host or export PVE_HOST/PVE_USER/'
                       'PVE_TOKEN_NAME/PVE_TOKEN_VALUE for token authentication.'
        )


class OperationError(LifecycleError):
    """A control-plane call failed for a specific VM."""

    def __init__(self, message: str, vm: Optional[str] = None, operation: Optional[str] = None):
        self.vm = vm
        self.operation = operation
        super().__init__(message)


class NoSnapshotError(LifecycleError):
    """Revert was requested for a VM that has no snapshot."""

    def __init__(self, vm: str):
        self.vm = vm
        super().__init__(f'VM {vm} has no snapshot to revert to')


class VMNotFoundError(LifecycleError):
    """A target name did not match any VM in the inventory."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"VM '{identifier}' not found")


class UnsupportedActionError(LifecycleError, ValueError):
    """The requested action is not one of the supported action words."""

    def __init__(self, action: str, supported: List[str]):
        self.action = action
        self.supported = supported
        super().__init__(f"Unsupported action '{action}'. Supported actions: {', '.join(supported)}")


class OperationCancelled(LifecycleError):
    """The batch was cancelled while this VM was being processed."""

    def __init__(self, vm: Optional[str] = None):
        self.vm = vm
        super().__init__(f'Operation on VM {vm} cancelled' if vm else 'Operation cancelled')
