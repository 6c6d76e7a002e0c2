"""
Value types shared by the lifecycle components.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pve_lifecycle.exceptions import UnsupportedActionError


class PowerState(Enum):
    POWERED_ON = 'PoweredOn'
    POWERED_OFF = 'PoweredOff'
    SUSPENDED = 'Suspended'


class GuestToolsStatus(Enum):
    OK = 'Ok'
    NOT_INSTALLED = 'NotInstalled'
    NOT_READY = 'NotReady'


class Action(Enum):
    """Canonical lifecycle actions."""
    START = 'start'
    STOP = 'stop'
    RESET = 'reset'
    SUSPEND = 'suspend'
    SNAPSHOT = 'snapshot'
    REVERT = 'revert'

    @classmethod
    def parse(cls, text: str) -> 'Action':
        """Normalise a user supplied action word, resolving aliases."""
        word = (text or '').strip().lower()
        if word in ACTION_ALIASES:
            return ACTION_ALIASES[word]
        try:
            return cls(word)
        except ValueError:
            raise UnsupportedActionError(text, sorted(ACTION_WORDS))


ACTION_ALIASES: Dict[str, Action] = {
    'pause': Action.SUSPEND,
    'unpause': Action.START,
    'reverttosnapshot': Action.REVERT,
}

ACTION_WORDS = [action.value for action in Action] + list(ACTION_ALIASES)


class Outcome(Enum):
    SUCCESS = 'success'
    NOOP = 'no-op'
    REJECTED = 'rejected'
    ERROR = 'error'
    CANCELLED = 'cancelled'


class ShutdownResult(Enum):
    GRACEFUL = 'GracefulShutdown'
    HARD_STOPPED = 'HardStopped'
    FAILED = 'Failed'


@dataclass(frozen=True)
class VM:
    """A virtual machine as seen by the control plane."""
    name: str
    vmid: str = ''
    node: str = ''

    def __str__(self) -> str:
        if self.vmid:
            return f'{self.name} ({self.vmid})'
        return self.name


@dataclass(frozen=True)
class VMState:
    power_state: PowerState
    tools_status: GuestToolsStatus


@dataclass(frozen=True)
class Snapshot:
    name: str
    created: datetime
    vm: VM
    snapshot_id: str = ''

    @property
    def ref(self) -> str:
        """Identifier the control plane knows the snapshot by."""
        return self.snapshot_id or self.name


@dataclass
class DispatchResult:
    outcome: Outcome
    message: str = ''
    error_kind: Optional[str] = None


@dataclass
class VMResult:
    """Result of an action on a single VM."""
    vm: str
    action: Action
    outcome: Outcome
    message: str = ''
    error_kind: Optional[str] = None
    duration: float = 0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def success(self) -> bool:
        return self.outcome not in (Outcome.ERROR, Outcome.CANCELLED)
