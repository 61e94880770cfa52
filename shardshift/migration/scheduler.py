"""Bounded concurrency scheduler for tenant database migrations"""

import time
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set
import structlog

from shardshift.exceptions import SchedulerBusyError
from shardshift.interfaces import MigrationPrimitive, OperationHandle, ResourceCatalog
from shardshift.migration.progress import ProgressReporter, RunCounters
from shardshift.models.models import (
    Direction,
    EligibleResource,
    MigrationOperation,
    OnlineState,
    OperationStatus,
    RecoveryAction,
    ResourceKey,
    TenantResource,
)

logger = structlog.get_logger()


@dataclass
class SchedulerResult:
    """What happened to each queued tenant during one scheduler run"""
    succeeded: List[str] = field(default_factory=list)
    faulted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    max_in_flight: int = 0


class BoundedConcurrencyScheduler:
    """
    Drives the eligibility queue to empty with at most
    max_concurrent_operations migrations in flight.

    Features:
    - Work conserving: every finished operation is backfilled from the queue
      straight away, so the window stays full until the queue drains
    - Cooperative polling: one control thread sweeps the in-flight set and
      sleeps between sweeps; the operations themselves run remotely
    - Adaptive polling: the interval grows while nothing finishes and drops
      back as soon as something does
    - Fault isolation: a faulted operation marks its resource errored and the
      rest of the batch carries on
    """

    def __init__(self, state_machine, catalog: ResourceCatalog, primitive: MigrationPrimitive,
                 direction: Direction,
                 reporter: ProgressReporter,
                 max_concurrent_operations: int = 50,
                 min_poll_interval: float = 1.0,
                 max_poll_interval: float = 10.0,
                 operation_timeout: Optional[float] = None,
                 metrics=None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the scheduler

        Args:
            state_machine: The recovery state machine used for every transition
            catalog: The resource catalog (shard pointers and tenant online state)
            primitive: The asynchronous migration primitive
            direction: Selects the start and conclude actions
            reporter: Receives a progress update after every state change
            max_concurrent_operations: Ceiling on operations in flight
            min_poll_interval: Seconds between sweeps while operations are finishing
            max_poll_interval: Upper bound the interval grows to while idle
            operation_timeout: Seconds before a pending operation is treated as
                faulted; None waits indefinitely
            metrics: Optional Metrics instance
            sleep: Sleep function, replaceable in tests
            clock: Time source, replaceable in tests
        """
        if max_concurrent_operations < 1:
            raise ValueError("max_concurrent_operations must be at least 1")
        self.state_machine = state_machine
        self.catalog = catalog
        self.primitive = primitive
        self.direction = direction
        self.reporter = reporter
        self.max_concurrent_operations = max_concurrent_operations
        self.min_poll_interval = min_poll_interval
        self.max_poll_interval = max_poll_interval
        self.current_poll_interval = min_poll_interval
        self.operation_timeout = operation_timeout
        self.metrics = metrics
        self.sleep = sleep
        self.clock = clock

        self.lock = threading.Lock()
        self.queue: Deque[EligibleResource] = deque()
        self.in_flight: Dict[str, MigrationOperation] = {}
        self.handles: Dict[str, OperationHandle] = {}
        self.active_targets: Set[ResourceKey] = set()
        self.owner_members: Dict[ResourceKey, Set[str]] = {}
        self.owner_faulted: Set[ResourceKey] = set()
        self.owner_started: Set[ResourceKey] = set()
        self.counters = RunCounters()
        self.result = SchedulerResult()

    def run(self, queue: Deque[EligibleResource], counters: RunCounters,
            track_owners: bool = True) -> SchedulerResult:
        """
        Run until both the queue and the in-flight set are empty.

        Args:
            queue: Eligible resources in admission order; consumed from the front
            counters: Run counters; completed and errored are advanced here
            track_owners: Rebuild owner membership from this queue. Pass False
                when the caller already called track_owners for a longer job

        Raises:
            SchedulerBusyError: If this scheduler is already running
        """
        if not self.lock.acquire(blocking=False):
            raise SchedulerBusyError(f"Scheduler for {self.direction.value} is already running")
        try:
            self.queue = queue
            self.counters = counters
            self.result = SchedulerResult()
            self.in_flight = {}
            self.handles = {}
            self.active_targets = set()
            self.current_poll_interval = self.min_poll_interval
            if track_owners:
                self.track_owners(entry.tracked for entry in self.queue)

            logger.info("scheduler.started",
                        direction=self.direction.value,
                        queued=len(self.queue),
                        window_size=self.max_concurrent_operations)

            self._admit()
            while self.in_flight or self.queue:
                finished = self._sweep()
                if not (self.in_flight or self.queue):
                    break

                if finished:
                    self.current_poll_interval = self.min_poll_interval
                else:
                    self.current_poll_interval = min(self.current_poll_interval * 1.5,
                                                     self.max_poll_interval)
                    logger.debug("scheduler.waiting",
                                 in_flight=len(self.in_flight),
                                 queued=len(self.queue),
                                 poll_interval=self.current_poll_interval)
                self.sleep(self.current_poll_interval)

            logger.info("scheduler.finished",
                        direction=self.direction.value,
                        succeeded=len(self.result.succeeded),
                        faulted=len(self.result.faulted),
                        skipped=len(self.result.skipped))
            return self.result
        finally:
            self.lock.release()

    def track_owners(self, resources: Iterable[TenantResource]):
        """
        Record which tracked databases belong to each pool and server.

        Called once per job with every database that may still be migrated,
        including deferred ones, so an owner is only concluded after its
        last member is done across all classification cycles. Owners missing
        from the catalog are not tracked.
        """
        self.owner_members = {}
        self.owner_faulted = set()
        self.owner_started = set()
        known = {}
        for resource in resources:
            for owner in resource.owner_keys:
                if owner not in known:
                    known[owner] = self.catalog.find_resource(owner) is not None
                if known[owner]:
                    self.owner_members.setdefault(owner, set()).add(resource.tenant_key)

    def release_owners(self, entry: EligibleResource, faulted: bool = False):
        """Conclude or error an owner once its last tracked member is done"""
        for owner in entry.tracked.owner_keys:
            members = self.owner_members.get(owner)
            if members is None or entry.tenant_key not in members:
                continue
            members.discard(entry.tenant_key)
            if faulted:
                self.owner_faulted.add(owner)
            if members or owner not in self.owner_started:
                continue
            if owner in self.owner_faulted:
                self.state_machine.update_recovery_state(owner, RecoveryAction.MARK_ERROR)
            else:
                self.state_machine.update_recovery_state(owner, self.direction.conclude_action)

    def _start_owners(self, entry: EligibleResource):
        for owner in entry.tracked.owner_keys:
            if owner in self.owner_members and owner not in self.owner_started:
                if self.state_machine.update_recovery_state(owner, self.direction.start_action):
                    self.owner_started.add(owner)

    def _admit(self):
        """Issue operations from the front of the queue until the window is full"""
        while self.queue and len(self.in_flight) < self.max_concurrent_operations:
            self._issue(self.queue.popleft())
        self.result.max_in_flight = max(self.result.max_in_flight, len(self.in_flight))
        self._publish_in_flight()

    def _issue(self, entry: EligibleResource):
        """Start one migration; the entry has already left the queue"""
        key = entry.tracked.key
        if key in self.active_targets:
            logger.warning("scheduler.duplicate_entry", tenant=entry.tenant_key, resource=str(key))
            return

        if not self.state_machine.update_recovery_state(entry.tracked, self.direction.start_action):
            logger.warning("scheduler.admission_skipped",
                           tenant=entry.tenant_key,
                           resource=str(key),
                           reason="start transition not recorded")
            self.result.skipped.append(entry.tenant_key)
            self.release_owners(entry)
            return

        self._start_owners(entry)
        self.catalog.set_tenant_online_state(entry.tenant_key, OnlineState.OFFLINE)

        try:
            handle = self.primitive.submit_failover(entry.target, entry.link_id)
        except Exception as e:
            operation = MigrationOperation(operation_id="", entry=entry, error_message=str(e))
            logger.error("scheduler.submit_failed",
                         tenant=entry.tenant_key,
                         target=str(entry.target),
                         error=str(e))
            self._fault(operation)
            return

        operation = MigrationOperation(operation_id=handle.id, entry=entry, submitted_at=self.clock())
        self.in_flight[handle.id] = operation
        self.handles[handle.id] = handle
        self.active_targets.add(key)
        if self.metrics:
            self.metrics.operations_submitted.labels(direction=self.direction.value).inc()

        logger.info("scheduler.operation_submitted",
                    tenant=entry.tenant_key,
                    target=str(entry.target),
                    operation_id=handle.id,
                    in_flight=len(self.in_flight))

    def _sweep(self) -> int:
        """
        Poll every in-flight operation once and finalize the terminal ones.

        Returns:
            int: Number of operations that reached a terminal status
        """
        finished = 0
        for operation_id in list(self.in_flight):
            operation = self.in_flight[operation_id]
            handle = self.handles[operation_id]
            status = handle.poll()

            if status == OperationStatus.PENDING and self._expired(operation):
                status = OperationStatus.FAULTED
                operation.error_message = "deadline exceeded"
            elif status == OperationStatus.FAULTED:
                operation.error_message = getattr(handle, "error", None) or "operation faulted"

            if status == OperationStatus.PENDING:
                continue

            self.in_flight.pop(operation_id)
            self.handles.pop(operation_id)
            self.active_targets.discard(operation.entry.tracked.key)
            operation.terminal_status = status
            finished += 1

            if status == OperationStatus.SUCCEEDED:
                self._succeed(operation)
            else:
                self._fault(operation)

            # Backfill the freed slot
            self._admit()
        return finished

    def _expired(self, operation: MigrationOperation) -> bool:
        if self.operation_timeout is None:
            return False
        return self.clock() - operation.submitted_at > timedelta(seconds=self.operation_timeout)

    def _succeed(self, operation: MigrationOperation):
        entry = operation.entry
        if not self.catalog.update_shard_pointer(entry.tenant_key, entry.target):
            logger.error("scheduler.shard_pointer_not_updated",
                         tenant=entry.tenant_key,
                         target=str(entry.target))
        self.catalog.set_tenant_online_state(entry.tenant_key, OnlineState.ONLINE)
        self.state_machine.update_recovery_state(entry.tracked, self.direction.conclude_action)
        self.release_owners(entry)

        self.counters.completed += 1
        self.result.succeeded.append(entry.tenant_key)
        if self.metrics:
            self.metrics.operations_succeeded.labels(direction=self.direction.value).inc()

        logger.info("scheduler.operation_succeeded",
                    tenant=entry.tenant_key,
                    operation_id=operation.operation_id,
                    active_shard=str(entry.target))
        self.reporter.report(self.counters)

    def _fault(self, operation: MigrationOperation):
        entry = operation.entry
        self.state_machine.update_recovery_state(entry.tracked, RecoveryAction.MARK_ERROR)
        # The tenant still points at its previous shard
        self.catalog.set_tenant_online_state(entry.tenant_key, OnlineState.ONLINE)
        self.release_owners(entry, faulted=True)

        self.counters.errored += 1
        self.result.faulted.append(entry.tenant_key)
        if self.metrics:
            self.metrics.operations_faulted.labels(direction=self.direction.value).inc()

        logger.error("scheduler.operation_faulted",
                     tenant=entry.tenant_key,
                     resource=str(entry.tracked.key),
                     operation_id=operation.operation_id or None,
                     error=operation.error_message)
        self.reporter.report(self.counters)

    def _publish_in_flight(self):
        if self.metrics:
            self.metrics.operations_in_flight.labels(direction=self.direction.value).set(len(self.in_flight))
