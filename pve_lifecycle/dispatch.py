"""
Map (action, current power state) to an operation, a no-op or a rejection.
"""

import logging

from pve_lifecycle.models import VM, Action, DispatchResult, Outcome, PowerState, ShutdownResult, VMState
from pve_lifecycle.shutdown import GracefulShutdownController
from pve_lifecycle.snapshots import SnapshotManager

logger = logging.getLogger(__name__)

POWER_STATE_LABELS = {
    PowerState.POWERED_ON: 'powered on',
    PowerState.POWERED_OFF: 'powered off',
    PowerState.SUSPENDED: 'suspended',
}


class ActionDispatcher:
    """Apply one action to one VM according to its current power state.

    Collaborator failures propagate to the caller; no-ops and rejections are
    returned as results and never touch the VM.
    """

    def __init__(self, client, shutdown_controller: GracefulShutdownController,
                 snapshot_manager: SnapshotManager):
        self.client = client
        self.shutdown_controller = shutdown_controller
        self.snapshot_manager = snapshot_manager
        self._handlers = {
            Action.START: self._start,
            Action.STOP: self._stop,
            Action.RESET: self._reset,
            Action.SUSPEND: self._suspend,
            Action.SNAPSHOT: self._snapshot,
            Action.REVERT: self._revert,
        }

    def dispatch(self, vm: VM, action, state: VMState) -> DispatchResult:
        if not isinstance(action, Action):
            action = Action.parse(action)
        result = self._handlers[action](vm, state.power_state)

        if result.outcome in (Outcome.NOOP, Outcome.REJECTED):
            logger.info("VM %s %s: %s", vm, action.value, result.message)
        return result

    def _start(self, vm: VM, power: PowerState) -> DispatchResult:
        if power == PowerState.POWERED_ON:
            return DispatchResult(Outcome.NOOP, 'already powered on')
        self.client.start(vm)
        return DispatchResult(Outcome.SUCCESS, 'started' if power == PowerState.POWERED_OFF else 'resumed')

    def _stop(self, vm: VM, power: PowerState) -> DispatchResult:
        if power == PowerState.POWERED_OFF:
            return DispatchResult(Outcome.NOOP, 'already powered off')

        result, error = self.shutdown_controller.attempt(vm)
        if result == ShutdownResult.GRACEFUL:
            return DispatchResult(Outcome.SUCCESS, 'guest shutdown requested')
        if result == ShutdownResult.HARD_STOPPED:
            return DispatchResult(Outcome.SUCCESS, 'powered off (hard stop)')
        return DispatchResult(Outcome.ERROR, f'shutdown failed: {error.message}', error_kind=type(error).__name__)

    def _reset(self, vm: VM, power: PowerState) -> DispatchResult:
        if power != PowerState.POWERED_ON:
            return DispatchResult(Outcome.REJECTED, f'{POWER_STATE_LABELS[power]}, cannot reset')
        self.client.guest_restart(vm)
        return DispatchResult(Outcome.SUCCESS, 'guest restart requested')

    def _suspend(self, vm: VM, power: PowerState) -> DispatchResult:
        if power == PowerState.SUSPENDED:
            return DispatchResult(Outcome.NOOP, 'already suspended')
        if power == PowerState.POWERED_OFF:
            return DispatchResult(Outcome.REJECTED, 'powered off, cannot suspend')
        self.client.suspend(vm)
        return DispatchResult(Outcome.SUCCESS, 'suspended')

    def _snapshot(self, vm: VM, power: PowerState) -> DispatchResult:
        snapshot = self.snapshot_manager.create(vm)
        return DispatchResult(Outcome.SUCCESS, f'snapshot {snapshot.name} created')

    def _revert(self, vm: VM, power: PowerState) -> DispatchResult:
        snapshot = self.snapshot_manager.revert(vm)
        return DispatchResult(Outcome.SUCCESS, f'reverted to snapshot {snapshot.name}')
