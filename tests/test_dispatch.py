"""
Tests for the action dispatcher transition table.
"""

import pytest

from pve_lifecycle.api import ProxmoxAPIError
from pve_lifecycle.dispatch import ActionDispatcher
from pve_lifecycle.exceptions import NoSnapshotError, OperationError
from pve_lifecycle.models import Action, GuestToolsStatus, Outcome, PowerState, VMState
from pve_lifecycle.shutdown import GracefulShutdownController
from pve_lifecycle.snapshots import SnapshotManager

ON = PowerState.POWERED_ON
OFF = PowerState.POWERED_OFF
SUSPENDED = PowerState.SUSPENDED


@pytest.fixture
def dispatcher(hypervisor, clock):
    return ActionDispatcher(hypervisor,
                            GracefulShutdownController(hypervisor, delay=0),
                            SnapshotManager(hypervisor, clock=clock))


def dispatch(dispatcher, hypervisor, name, action):
    vm = hypervisor.get_vm(name)
    state = VMState(hypervisor.power[name], hypervisor.tools[name])
    return dispatcher.dispatch(vm, action, state)


class TestTransitionTable:
    """Each (action, power state) pair and the calls it makes."""

    @pytest.mark.parametrize("action,power,outcome,calls", [
        (Action.START, ON, Outcome.NOOP, []),
        (Action.START, OFF, Outcome.SUCCESS, [("start", "vm")]),
        (Action.START, SUSPENDED, Outcome.SUCCESS, [("start", "vm")]),
        (Action.STOP, ON, Outcome.SUCCESS, [("guest_shutdown", "vm")]),
        (Action.STOP, OFF, Outcome.NOOP, []),
        (Action.STOP, SUSPENDED, Outcome.SUCCESS, [("guest_shutdown", "vm")]),
        (Action.RESET, ON, Outcome.SUCCESS, [("guest_restart", "vm")]),
        (Action.RESET, OFF, Outcome.REJECTED, []),
        (Action.RESET, SUSPENDED, Outcome.REJECTED, []),
        (Action.SUSPEND, ON, Outcome.SUCCESS, [("suspend", "vm")]),
        (Action.SUSPEND, OFF, Outcome.REJECTED, []),
        (Action.SUSPEND, SUSPENDED, Outcome.NOOP, []),
    ])
    def test_power_actions(self, dispatcher, hypervisor, action, power, outcome, calls):
        hypervisor.add_vm("vm", power=power)

        result = dispatch(dispatcher, hypervisor, "vm", action)

        assert result.outcome is outcome
        assert hypervisor.mutating_calls == calls

    @pytest.mark.parametrize("power", [ON, OFF, SUSPENDED])
    def test_snapshot_valid_in_any_state(self, dispatcher, hypervisor, power):
        hypervisor.add_vm("vm", power=power)

        result = dispatch(dispatcher, hypervisor, "vm", Action.SNAPSHOT)

        assert result.outcome is Outcome.SUCCESS
        assert len(hypervisor.snapshots["vm"]) == 1

    @pytest.mark.parametrize("power", [ON, OFF, SUSPENDED])
    def test_revert_valid_in_any_state(self, dispatcher, hypervisor, power):
        vm = hypervisor.add_vm("vm", power=power)
        hypervisor.create_snapshot(vm, "03-07-2024-09-30")

        result = dispatch(dispatcher, hypervisor, "vm", Action.REVERT)

        assert result.outcome is Outcome.SUCCESS
        assert "03-07-2024-09-30" in result.message

    def test_rejection_messages(self, dispatcher, hypervisor):
        hypervisor.add_vm("off", power=OFF)
        hypervisor.add_vm("paused", power=SUSPENDED)

        assert dispatch(dispatcher, hypervisor, "off", Action.RESET).message == "powered off, cannot reset"
        assert dispatch(dispatcher, hypervisor, "paused", Action.RESET).message == "suspended, cannot reset"
        assert dispatch(dispatcher, hypervisor, "off", Action.SUSPEND).message == "powered off, cannot suspend"

    def test_stop_hard_stops_without_tools(self, dispatcher, hypervisor):
        hypervisor.add_vm("vm", power=ON, tools=GuestToolsStatus.NOT_INSTALLED)

        result = dispatch(dispatcher, hypervisor, "vm", Action.STOP)

        assert result.outcome is Outcome.SUCCESS
        assert hypervisor.mutating_calls == [("hard_stop", "vm")]

    def test_failed_shutdown_is_error(self, dispatcher, hypervisor):
        hypervisor.add_vm("vm", power=ON)
        hypervisor.fail("guest_shutdown", "vm")

        result = dispatch(dispatcher, hypervisor, "vm", Action.STOP)

        assert result.outcome is Outcome.ERROR

    def test_failed_shutdown_carries_cause(self, dispatcher, hypervisor):
        hypervisor.add_vm("vm", power=ON, tools=GuestToolsStatus.NOT_INSTALLED)
        hypervisor.fail("hard_stop", "vm", ProxmoxAPIError("VM is locked (backup)", 500))

        result = dispatch(dispatcher, hypervisor, "vm", Action.STOP)

        assert result.outcome is Outcome.ERROR
        assert result.message == "shutdown failed: VM is locked (backup)"
        assert result.error_kind == "ProxmoxAPIError"

    def test_collaborator_failure_propagates(self, dispatcher, hypervisor):
        hypervisor.add_vm("vm", power=OFF)
        hypervisor.fail("start", "vm")

        with pytest.raises(OperationError):
            dispatch(dispatcher, hypervisor, "vm", Action.START)

    def test_revert_without_snapshot_raises(self, dispatcher, hypervisor):
        hypervisor.add_vm("vm", power=ON)

        with pytest.raises(NoSnapshotError):
            dispatch(dispatcher, hypervisor, "vm", Action.REVERT)


class TestAliases:
    """Alias words dispatch exactly like their canonical action."""

    @pytest.mark.parametrize("alias,canonical", [
        ("pause", "suspend"),
        ("unpause", "start"),
        ("reverttosnapshot", "revert"),
    ])
    @pytest.mark.parametrize("power", [ON, OFF, SUSPENDED])
    def test_alias_equivalence(self, hypervisor, clock, alias, canonical, power):
        outcomes = []
        for word in (alias, canonical):
            fake = type(hypervisor)()
            vm = fake.add_vm("vm", power=power)
            fake.create_snapshot(vm, "03-07-2024-09-30")
            fake.calls.clear()
            dispatcher = ActionDispatcher(fake, GracefulShutdownController(fake, delay=0),
                                          SnapshotManager(fake, clock=clock))
            result = dispatcher.dispatch(vm, word, VMState(power, GuestToolsStatus.OK))
            outcomes.append((result.outcome, fake.mutating_calls, fake.power["vm"]))

        assert outcomes[0] == outcomes[1]
