"""
Fresh reads of VM power state and guest tools status.

Nothing here is cached: state can change between any two calls.
"""

from pve_lifecycle.models import VM, GuestToolsStatus, PowerState, VMState


def query_power_state(client, vm: VM) -> PowerState:
    return client.power_state(vm)


def query_tools_status(client, vm: VM) -> GuestToolsStatus:
    return client.guest_tools_status(vm)


def query_state(client, vm: VM) -> VMState:
    return VMState(power_state=query_power_state(client, vm),
                   tools_status=query_tools_status(client, vm))
