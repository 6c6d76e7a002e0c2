"""
Run one action over a list of VMs, one VM at a time or through a bounded
worker pool, recording an outcome per VM and continuing past failures.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pve_lifecycle.dispatch import ActionDispatcher
from pve_lifecycle.exceptions import OperationCancelled
from pve_lifecycle.models import Action, Outcome, VMResult
from pve_lifecycle.shutdown import DEFAULT_DELAY, DEFAULT_MAX_ATTEMPTS, GracefulShutdownController
from pve_lifecycle.snapshots import SnapshotManager
from pve_lifecycle.state import query_state

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = 'skipped, batch cancelled'


class BatchReport:
    """Thread-safe collection of per-VM results for one batch."""

    def __init__(self, action: Action, total: int):
        self.action = action
        self.total = total
        self._results: Dict[int, VMResult] = {}
        self.lock = threading.Lock()

    def add_result(self, index: int, result: VMResult):
        with self.lock:
            self._results[index] = result

    def has_result(self, index: int) -> bool:
        with self.lock:
            return index in self._results

    @property
    def results(self) -> List[VMResult]:
        """Results in the order the targets were given."""
        with self.lock:
            return [self._results[i] for i in sorted(self._results)]

    def counts(self) -> Dict[Outcome, int]:
        counts = {outcome: 0 for outcome in Outcome}
        for result in self.results:
            counts[result.outcome] += 1
        return counts

    @property
    def has_errors(self) -> bool:
        counts = self.counts()
        return counts[Outcome.ERROR] > 0 or counts[Outcome.CANCELLED] > 0

    def summary(self) -> str:
        counts = self.counts()
        lines = [
            f"{self.action.value.capitalize()} Summary:",
            "=" * 60,
            f"Total VMs: {self.total}",
            f"Successful: {counts[Outcome.SUCCESS]}",
            f"No-op: {counts[Outcome.NOOP]}",
            f"Rejected: {counts[Outcome.REJECTED]}",
            f"Failed: {counts[Outcome.ERROR]}",
            f"Cancelled: {counts[Outcome.CANCELLED]}",
        ]

        failed = [r for r in self.results if r.outcome == Outcome.ERROR]
        if failed:
            lines.append("")
            lines.append("Failed Operations:")
            lines.append("-" * 40)
            for result in failed:
                lines.append(f"  VM {result.vm}: [{result.error_kind}] {result.message}")
        return "\n".join(lines)

    def print_summary(self):
        print(f"\n{self.summary()}")


class BatchExecutor:
    """Apply an action to every target, continuing when a VM fails."""

    def __init__(self, client, dispatcher: ActionDispatcher, max_workers: int = 1,
                 cancel_event: Optional[threading.Event] = None,
                 on_result: Optional[Callable[[VMResult], None]] = None):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.client = client
        self.dispatcher = dispatcher
        self.max_workers = max_workers
        self.cancel_event = cancel_event or threading.Event()
        self.on_result = on_result

    @classmethod
    def create(cls, client, max_workers: int = 1, shutdown_delay: float = DEFAULT_DELAY,
               shutdown_attempts: int = DEFAULT_MAX_ATTEMPTS, clock: Callable[[], datetime] = datetime.now,
               on_result: Optional[Callable[[VMResult], None]] = None) -> 'BatchExecutor':
        """Wire a dispatcher, shutdown controller and snapshot manager around one cancel event."""
        cancel_event = threading.Event()
        shutdown_controller = GracefulShutdownController(client, delay=shutdown_delay,
                                                         max_attempts=shutdown_attempts,
                                                         cancel_event=cancel_event)
        dispatcher = ActionDispatcher(client, shutdown_controller, SnapshotManager(client, clock=clock))
        return cls(client, dispatcher, max_workers=max_workers, cancel_event=cancel_event,
                   on_result=on_result)

    def cancel(self):
        """Abort in-flight waits and skip VMs not started yet."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, action: Action, names: List[str]) -> BatchReport:
        """Process every target; an interrupt cancels whatever has not finished.

        VMs that never produced a result are recorded as CANCELLED, so the
        report always covers every target.
        """
        report = BatchReport(action, len(names))
        if not names:
            logger.info("No VMs matched the target, nothing to do")
            return report

        try:
            if self.max_workers == 1:
                for index, name in enumerate(names):
                    self._record(report, index, self.process_vm(action, name))
            else:
                self._run_pool(report, action, names)
        except KeyboardInterrupt:
            logger.warning("Interrupted, cancelling the remaining VMs")
            self.cancel()

        for index, name in enumerate(names):
            if not report.has_result(index):
                report.add_result(index, VMResult(name, action, Outcome.CANCELLED, CANCELLED_MESSAGE))
        return report

    def _run_pool(self, report: BatchReport, action: Action, names: List[str]):
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_index = {
                executor.submit(self.process_vm, action, name): index
                for index, name in enumerate(names)
            }
            try:
                for future in as_completed(future_to_index):
                    self._record(report, future_to_index[future], future.result())
            except KeyboardInterrupt:
                # Must happen before the executor joins its workers
                logger.warning("Interrupted, cancelling the remaining VMs")
                self.cancel()
                for future in future_to_index:
                    future.cancel()
                for future, index in future_to_index.items():
                    if not future.cancelled() and not report.has_result(index):
                        report.add_result(index, future.result())

    def _record(self, report: BatchReport, index: int, result: VMResult):
        report.add_result(index, result)
        if self.on_result is not None:
            self.on_result(result)

    def process_vm(self, action: Action, name: str) -> VMResult:
        start_time = time.time()

        if self.cancelled:
            return VMResult(name, action, Outcome.CANCELLED, CANCELLED_MESSAGE)

        try:
            vm = self.client.get_vm(name)
            state = query_state(self.client, vm)
            dispatched = self.dispatcher.dispatch(vm, action, state)
        except OperationCancelled as e:
            logger.warning("%s of VM %s cancelled", action.value, name)
            return VMResult(name, action, Outcome.CANCELLED, e.message, duration=time.time() - start_time)
        except Exception as e:
            logger.error("%s of VM %s failed: %s", action.value, name, e)
            return VMResult(name, action, Outcome.ERROR, str(e), error_kind=type(e).__name__,
                            duration=time.time() - start_time)

        error_kind = dispatched.error_kind
        if dispatched.outcome == Outcome.ERROR:
            error_kind = error_kind or 'OperationError'
            logger.error("%s of VM %s failed: %s", action.value, name, dispatched.message)

        return VMResult(name, action, dispatched.outcome, dispatched.message, error_kind=error_kind,
                        duration=time.time() - start_time)
