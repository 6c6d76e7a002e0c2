"""
Shared fixtures: an in-memory hypervisor standing in for the Proxmox client.
"""

from datetime import datetime, timedelta

import pytest

from pve_lifecycle.exceptions import OperationError, VMNotFoundError
from pve_lifecycle.models import VM, GuestToolsStatus, PowerState, Snapshot
from pve_lifecycle.session import clear_ambient_sessions

MUTATING_OPERATIONS = (
    'start', 'hard_stop', 'guest_shutdown', 'guest_restart', 'suspend',
    'create_snapshot', 'delete_snapshot', 'revert_to_snapshot',
)


class FakeClock:
    """Returns a new minute on every call."""

    def __init__(self, start=datetime(2024, 3, 7, 9, 30)):
        self.now = start

    def __call__(self):
        current = self.now
        self.now = current + timedelta(minutes=1)
        return current


class FakeHypervisor:
    """Implements the client calls the lifecycle components make."""

    def __init__(self):
        self.vms = {}
        self.power = {}
        self.tools = {}
        self.tools_sequence = {}
        self.snapshots = {}
        self.snapshot_power = {}
        self.failures = {}
        self.calls = []
        self.disconnected = False
        self._snapshot_clock = FakeClock(datetime(2024, 1, 1, 0, 0))

    def add_vm(self, name, power=PowerState.POWERED_OFF, tools=GuestToolsStatus.OK, vmid=None):
        vm = VM(name=name, vmid=vmid or str(100 + len(self.vms)), node='pve01')
        self.vms[name] = vm
        self.power[name] = power
        self.tools[name] = tools
        self.snapshots[name] = []
        return vm

    def fail(self, operation, name, error=None):
        self.failures[(operation, name)] = error or OperationError(f'{operation} failed on {name}', name, operation)

    def _call(self, operation, vm, *args):
        self.calls.append((operation, vm.name) + args)
        error = self.failures.get((operation, vm.name))
        if error is not None:
            raise error

    @property
    def mutating_calls(self):
        return [call for call in self.calls if call[0] in MUTATING_OPERATIONS]

    def disconnect(self):
        self.disconnected = True

    def list_vms(self):
        return list(self.vms.values())

    def get_vm(self, identifier):
        if identifier in self.vms:
            return self.vms[identifier]
        raise VMNotFoundError(identifier)

    def power_state(self, vm):
        self._call('power_state', vm)
        return self.power[vm.name]

    def guest_tools_status(self, vm):
        self._call('guest_tools_status', vm)
        sequence = self.tools_sequence.get(vm.name)
        if sequence:
            return sequence.pop(0)
        return self.tools[vm.name]

    def start(self, vm):
        self._call('start', vm)
        self.power[vm.name] = PowerState.POWERED_ON

    def hard_stop(self, vm):
        self._call('hard_stop', vm)
        self.power[vm.name] = PowerState.POWERED_OFF

    def guest_shutdown(self, vm):
        self._call('guest_shutdown', vm)
        self.power[vm.name] = PowerState.POWERED_OFF

    def guest_restart(self, vm):
        self._call('guest_restart', vm)

    def suspend(self, vm):
        self._call('suspend', vm)
        self.power[vm.name] = PowerState.SUSPENDED

    def list_snapshots(self, vm):
        self._call('list_snapshots', vm)
        return list(self.snapshots[vm.name])

    def create_snapshot(self, vm, name):
        self._call('create_snapshot', vm, name)
        snapshot = Snapshot(name=name, created=self._snapshot_clock(), vm=vm)
        self.snapshots[vm.name].append(snapshot)
        self.snapshot_power[(vm.name, name)] = self.power[vm.name]
        return snapshot

    def delete_snapshot(self, snapshot):
        self._call('delete_snapshot', snapshot.vm, snapshot.name)
        self.snapshots[snapshot.vm.name].remove(snapshot)

    def revert_to_snapshot(self, vm, snapshot):
        self._call('revert_to_snapshot', vm, snapshot.name)
        self.power[vm.name] = self.snapshot_power.get((vm.name, snapshot.name), self.power[vm.name])


@pytest.fixture
def hypervisor():
    return FakeHypervisor()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def no_ambient_sessions():
    clear_ambient_sessions()
    yield
    clear_ambient_sessions()
