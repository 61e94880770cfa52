"""Recovery run orchestration for the ShardShift orchestrator"""
import time
from datetime import datetime
from typing import Callable, List
import structlog

from shardshift.exceptions import CatalogUnavailableError, ResourceNotFoundError, RunLockedError
from shardshift.interfaces import ResourceCatalog, ReporterSink
from shardshift.migration.classifier import EligibilityClassifier, TenantPair
from shardshift.migration.progress import ProgressReporter, RunCounters, log_sink
from shardshift.migration.scheduler import BoundedConcurrencyScheduler
from shardshift.models.models import (
    BatchMode,
    Direction,
    EligibleResource,
    OnlineState,
    RecoveryAction,
    RecoveryState,
    RunSummary,
)
from shardshift.recovery.state_machine import RecoveryStateMachine

logger = structlog.get_logger()


class RecoveryJob:
    """
    Runs one failover or repatriation pass over every tenant.

    The job holds no state across runs. Everything it needs to resume after a
    crash is re-read from the catalog and re-probed from the replication
    topology, so running it again converges to the same end state.
    """

    def __init__(self, settings, catalog: ResourceCatalog, replication, direction: Direction,
                 metrics=None, sink: ReporterSink = log_sink,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.catalog = catalog
        self.replication = replication
        self.direction = direction
        self.metrics = metrics
        self.sleep = sleep

        self.state_machine = RecoveryStateMachine(catalog, metrics)
        self.classifier = EligibilityClassifier(catalog, replication, direction, settings, metrics)
        self.reporter = ProgressReporter(direction.value, sink, metrics)
        self.scheduler = BoundedConcurrencyScheduler(
            state_machine=self.state_machine,
            catalog=catalog,
            primitive=replication,
            direction=direction,
            reporter=self.reporter,
            max_concurrent_operations=settings.MAX_CONCURRENT_OPERATIONS,
            min_poll_interval=settings.MIN_POLL_INTERVAL,
            max_poll_interval=settings.MAX_POLL_INTERVAL,
            operation_timeout=settings.OPERATION_TIMEOUT,
            metrics=metrics,
            sleep=sleep
        )

    def _check_preconditions(self):
        if not self.catalog.ping():
            raise CatalogUnavailableError("Resource catalog is unreachable")
        if not self.catalog.acquire_run_lock(self.direction.value, self.settings.RUN_LOCK_TTL):
            raise RunLockedError(f"A {self.direction.value} run is already in progress")

    def run(self) -> RunSummary:
        """
        Run the pass to completion.

        Raises:
            RunAbortedError: If a global precondition fails; nothing has been
                issued when this is raised
        """
        self._check_preconditions()
        try:
            return self._run()
        finally:
            self.catalog.release_run_lock(self.direction.value)

    def _run(self) -> RunSummary:
        pairs = self.classifier.pairs()
        decision = self.classifier.decide_batch_mode(pairs)
        summary = RunSummary(direction=self.direction, batch_mode=decision.mode)
        logger.info("job.started",
                    direction=self.direction.value,
                    batch_mode=decision.mode.value,
                    tenants=len(pairs))

        reset_pairs, pairs = self._split_reset(pairs, decision)
        counters = RunCounters()
        result = self.classifier.classify(pairs)
        if decision.mode == BatchMode.RESET:
            # Nothing diverged, so nothing is replicated: interrupted tenants
            # whose origin copy is not primary yet are reset as well
            by_key = {pair.key: pair for pair in pairs}
            reset_pairs.extend(by_key[entry.tenant_key] for entry in result.eligible)
            reset_pairs.extend(result.deferred)
            result.eligible.clear()
            result.deferred = []
        counters.total = len(reset_pairs) + result.total
        self.scheduler.track_owners(
            [entry.tracked for entry in result.eligible] + [pair.recovery for pair in result.deferred]
        )

        if counters.total == 0:
            logger.info("job.nothing_to_do", progress=self.reporter.report(counters))
            summary.finished_at = datetime.now()
            return summary

        for pair in reset_pairs:
            if self._reset(pair):
                counters.completed += 1
                summary.reset.append(pair.key)
            else:
                counters.errored += 1
                summary.skipped.append(pair.key)
            self.reporter.report(counters)

        cycle = 1
        while True:
            for entry in result.converged:
                self._reconcile(entry)
                self.scheduler.release_owners(entry)
                counters.completed += 1
                summary.converged.append(entry.tenant_key)
                self.reporter.report(counters)

            if result.eligible:
                outcome = self.scheduler.run(result.eligible, counters, track_owners=False)
                summary.succeeded.extend(outcome.succeeded)
                summary.faulted.extend(outcome.faulted)
                summary.skipped.extend(outcome.skipped)

            if not result.deferred or cycle >= self.settings.MAX_CLASSIFICATION_CYCLES:
                break

            cycle += 1
            logger.info("job.reclassifying", deferred=len(result.deferred), cycle=cycle)
            self.sleep(self.settings.RECLASSIFY_INTERVAL)
            result = self.classifier.classify(self._refresh(result.deferred))

        summary.deferred = [pair.key for pair in result.deferred]
        if summary.deferred:
            logger.warning("job.deferred_remaining", tenants=summary.deferred)

        summary.total = counters.total
        summary.completed = counters.completed
        summary.errored = counters.errored
        summary.finished_at = datetime.now()
        logger.info("job.finished",
                    direction=self.direction.value,
                    progress=self.reporter.report(counters),
                    errored=counters.errored,
                    deferred=len(summary.deferred))
        return summary

    def _split_reset(self, pairs: List[TenantPair], decision):
        """Separate tenants that take the reset fast path from those that migrate"""
        if self.direction == Direction.FORWARD:
            return [], pairs

        reset, migrate = [], []
        for pair in pairs:
            state = pair.recovery.recovery_state
            if state == RecoveryState.COMPLETE:
                migrate.append(pair)
            elif state == self.direction.start_state:
                # Interrupted operation: re-evaluate from topology
                migrate.append(pair)
            elif state == RecoveryState.RESETTING:
                reset.append(pair)
            elif decision.mode == BatchMode.RESET:
                reset.append(pair)
            elif pair.key not in decision.diverged and pair.origin is not None:
                reset.append(pair)
            else:
                migrate.append(pair)
        return reset, migrate

    def _reset(self, pair: TenantPair) -> bool:
        """Re-point an unchanged tenant at its origin copy without replication"""
        tracked = pair.recovery
        origin = pair.origin.location if pair.origin else pair.tenant.origin_shard
        if not self.state_machine.update_recovery_state(tracked, RecoveryAction.START_RESET):
            logger.error("job.reset_failed", tenant=pair.key, stage="start")
            return False
        if not self.catalog.update_shard_pointer(pair.key, origin):
            logger.error("job.reset_failed", tenant=pair.key, stage="shard_pointer")
            return False
        self.catalog.set_tenant_online_state(pair.key, OnlineState.ONLINE)
        if not self.state_machine.update_recovery_state(tracked, RecoveryAction.END_RESET):
            logger.error("job.reset_failed", tenant=pair.key, stage="end")
            return False
        logger.info("job.tenant_reset", tenant=pair.key, active_shard=str(origin))
        return True

    def _reconcile(self, entry: EligibleResource):
        """
        Bring catalog records in line with a copy that is already primary.

        Covers restarts that happened between an operation finishing and its
        bookkeeping being written.
        """
        if entry.tracked.recovery_state == self.direction.start_state:
            self.state_machine.update_recovery_state(entry.tracked, self.direction.conclude_action)
        try:
            tenant = self.catalog.get_tenant(entry.tenant_key)
        except ResourceNotFoundError:
            logger.error("job.tenant_missing", tenant=entry.tenant_key)
            return
        if tenant.active_shard != entry.target:
            self.catalog.update_shard_pointer(entry.tenant_key, entry.target)
        if tenant.online_state != OnlineState.ONLINE:
            self.catalog.set_tenant_online_state(entry.tenant_key, OnlineState.ONLINE)

    def _refresh(self, deferred: List[TenantPair]) -> List[TenantPair]:
        """Re-read deferred tenants from the catalog before probing them again"""
        keys = {pair.key for pair in deferred}
        tenants = [t for t in self.catalog.list_tenants() if t.key in keys]
        return self.classifier.pairs(tenants)
