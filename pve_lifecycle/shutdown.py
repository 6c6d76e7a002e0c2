"""
Guest-agent-aware shutdown with a bounded wait for the agent and a hard
stop fallback.
"""

import logging
import threading
from typing import Optional, Tuple

from pve_lifecycle.exceptions import OperationCancelled, OperationError
from pve_lifecycle.models import VM, GuestToolsStatus, ShutdownResult
from pve_lifecycle.state import query_tools_status

logger = logging.getLogger(__name__)

DEFAULT_DELAY = 5
DEFAULT_MAX_ATTEMPTS = 3


class GracefulShutdownController:
    """Shut a VM down through its guest agent, forcing power off when the
    agent is missing or never becomes ready.

    Waiting happens on ``cancel_event`` so a cancelled batch interrupts a
    poll immediately instead of sleeping out the delay.
    """

    def __init__(self, client, delay: float = DEFAULT_DELAY, max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 cancel_event: Optional[threading.Event] = None):
        self.client = client
        self.delay = delay
        self.max_attempts = max_attempts
        self.cancel_event = cancel_event or threading.Event()

    def shutdown(self, vm: VM) -> ShutdownResult:
        return self.attempt(vm)[0]

    def attempt(self, vm: VM) -> Tuple[ShutdownResult, Optional[OperationError]]:
        """Shut down ``vm``, also returning the error behind a FAILED result."""
        try:
            return self._shutdown(vm), None
        except OperationError as e:
            logger.error("Shutdown of VM %s failed: %s", vm, e.message)
            return ShutdownResult.FAILED, e

    def _shutdown(self, vm: VM) -> ShutdownResult:
        tools = query_tools_status(self.client, vm)

        if tools == GuestToolsStatus.OK:
            return self._graceful(vm)

        if tools == GuestToolsStatus.NOT_INSTALLED:
            logger.info("VM %s has no guest agent, forcing power off", vm)
            return self._hard_stop(vm)

        attempts = 0
        while attempts < self.max_attempts:
            if self.cancel_event.wait(self.delay):
                raise OperationCancelled(vm.name)
            attempts += 1
            tools = query_tools_status(self.client, vm)
            logger.info("VM %s guest agent %s (attempt %d/%d)", vm, tools.value, attempts, self.max_attempts)
            if tools == GuestToolsStatus.OK:
                return self._graceful(vm)

        logger.warning("Guest agent on VM %s not ready after %d attempts, forcing power off",
                       vm, self.max_attempts)
        return self._hard_stop(vm)

    def _graceful(self, vm: VM) -> ShutdownResult:
        logger.info("Requesting guest shutdown of VM %s", vm)
        self.client.guest_shutdown(vm)
        return ShutdownResult.GRACEFUL

    def _hard_stop(self, vm: VM) -> ShutdownResult:
        if self.cancel_event.is_set():
            raise OperationCancelled(vm.name)
        self.client.hard_stop(vm)
        return ShutdownResult.HARD_STOPPED
