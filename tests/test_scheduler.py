"""
Unit tests for the bounded concurrency scheduler.

Tests cover:
- Concurrency ceiling and immediate backfill
- Queue order driving admission order
- Success finalization (shard pointer, online state, conclude, owners)
- Fault isolation (errored state, counters, queue keeps draining)
- Submission failures, skipped admissions and duplicate entries
- Optional per-operation deadline
- Re-entrancy guard
"""

from collections import deque
from datetime import datetime, timedelta

import pytest
from prometheus_client import CollectorRegistry

from shardshift.exceptions import SchedulerBusyError
from shardshift.migration.progress import ProgressReporter, RunCounters
from shardshift.migration.scheduler import BoundedConcurrencyScheduler
from shardshift.models.models import (
    Direction,
    EligibleResource,
    OnlineState,
    OperationStatus,
    RecoveryState,
    ResourceKey,
    ResourceKind,
    ShardLocation,
)
from shardshift.monitoring.metrics import Metrics
from shardshift.recovery.state_machine import RecoveryStateMachine
from tests.fixtures import (
    ORIGIN_SERVER,
    POOL,
    RECOVERY_SERVER,
    add_tenant,
    recovery_owners,
)


def entry_for(catalog, key: str, direction: Direction = Direction.REVERSE, tier: int = 0) -> EligibleResource:
    tracked = catalog.get_resource(ResourceKey(name=f"{RECOVERY_SERVER}/{key}", kind=ResourceKind.DATABASE))
    server = ORIGIN_SERVER if direction == Direction.REVERSE else RECOVERY_SERVER
    return EligibleResource(
        tenant_key=key,
        tier=tier,
        tracked=tracked,
        target=ShardLocation(server=server, database=key),
        link_id=f"link-{key}",
    )


def make_scheduler(catalog, replication, sink, direction=Direction.REVERSE, **kwargs):
    return BoundedConcurrencyScheduler(
        state_machine=RecoveryStateMachine(catalog),
        catalog=catalog,
        primitive=replication,
        direction=direction,
        reporter=ProgressReporter(direction.value, sink),
        max_concurrent_operations=kwargs.pop("max_concurrent_operations", 2),
        min_poll_interval=0.0,
        max_poll_interval=0.0,
        sleep=kwargs.pop("sleep", lambda seconds: None),
        **kwargs,
    )


def state_of(catalog, key: str) -> RecoveryState:
    resource = catalog.get_resource(ResourceKey(name=f"{RECOVERY_SERVER}/{key}", kind=ResourceKind.DATABASE))
    return resource.recovery_state


class TestConcurrencyCeiling:
    """Tests for admission, the ceiling and backfill."""

    def test_three_eligible_with_window_of_two(self, catalog, replication, sink) -> None:
        for key in ("alpha", "bravo", "charlie"):
            add_tenant(catalog, key)
        replication.outcomes = {
            "alpha": (0, OperationStatus.SUCCEEDED),
            "bravo": (2, OperationStatus.SUCCEEDED),
            "charlie": (0, OperationStatus.SUCCEEDED),
        }
        queue = deque(entry_for(catalog, key) for key in ("alpha", "bravo", "charlie"))
        scheduler = make_scheduler(catalog, replication, sink)

        result = scheduler.run(queue, RunCounters(total=3))

        # alpha and bravo admitted first; charlie only after alpha finished
        assert [t.database for t in replication.submitted] == ["alpha", "bravo", "charlie"]
        assert replication.max_live == 2
        assert result.max_in_flight == 2
        assert result.succeeded == ["alpha", "charlie", "bravo"]
        assert not queue
        assert not scheduler.in_flight

    def test_backfill_happens_in_the_same_sweep(self, catalog, replication, sink) -> None:
        for key in ("alpha", "bravo", "charlie"):
            add_tenant(catalog, key)
        replication.outcomes = {
            "alpha": (0, OperationStatus.SUCCEEDED),
            "bravo": (5, OperationStatus.SUCCEEDED),
            "charlie": (5, OperationStatus.SUCCEEDED),
        }
        queue = deque(entry_for(catalog, key) for key in ("alpha", "bravo", "charlie"))
        scheduler = make_scheduler(catalog, replication, sink)
        scheduler.queue = queue
        scheduler.counters = RunCounters(total=3)

        scheduler._admit()
        assert len(scheduler.in_flight) == 2
        scheduler._sweep()

        assert len(scheduler.in_flight) == 2
        assert {op.entry.tenant_key for op in scheduler.in_flight.values()} == {"bravo", "charlie"}

    @pytest.mark.parametrize("window", [1, 3, 50])
    def test_never_exceeds_window(self, catalog, replication, sink, window) -> None:
        keys = [f"tenant{i}" for i in range(7)]
        for i, key in enumerate(keys):
            add_tenant(catalog, key)
            replication.outcomes[key] = (i % 3, OperationStatus.SUCCEEDED)
        queue = deque(entry_for(catalog, key) for key in keys)
        scheduler = make_scheduler(catalog, replication, sink, max_concurrent_operations=window)

        result = scheduler.run(queue, RunCounters(total=len(keys)))

        assert replication.max_live <= window
        assert result.max_in_flight == min(window, len(keys))
        assert sorted(result.succeeded) == sorted(keys)

    def test_rejects_zero_window(self, catalog, replication, sink) -> None:
        with pytest.raises(ValueError):
            make_scheduler(catalog, replication, sink, max_concurrent_operations=0)

    def test_admits_in_queue_order(self, catalog, replication, sink) -> None:
        for key in ("alpha", "bravo", "charlie", "delta"):
            add_tenant(catalog, key)
        queue = deque(entry_for(catalog, key) for key in ("delta", "bravo", "alpha", "charlie"))
        scheduler = make_scheduler(catalog, replication, sink, max_concurrent_operations=1)

        scheduler.run(queue, RunCounters(total=4))

        assert [t.database for t in replication.submitted] == ["delta", "bravo", "alpha", "charlie"]


class TestFinalization:
    """Tests for success and fault handling."""

    def test_success_repoints_and_concludes(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha")
        scheduler = make_scheduler(catalog, replication, sink)
        counters = RunCounters(total=1)

        scheduler.run(deque([entry_for(catalog, "alpha")]), counters)

        tenant = catalog.get_tenant("alpha")
        assert tenant.active_shard == ShardLocation(server=ORIGIN_SERVER, database="alpha")
        assert tenant.online_state == OnlineState.ONLINE
        assert state_of(catalog, "alpha") == RecoveryState.COMPLETE
        assert counters.completed == 1
        assert sink.reports[-1] == ("repatriate", 100, 1, 1)

    def test_forward_success_ends_failover(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha", recovery_state=RecoveryState.NONE)
        scheduler = make_scheduler(catalog, replication, sink, direction=Direction.FORWARD)

        scheduler.run(deque([entry_for(catalog, "alpha", Direction.FORWARD)]), RunCounters(total=1))

        assert state_of(catalog, "alpha") == RecoveryState.FAILED_OVER
        assert catalog.get_tenant("alpha").active_shard.server == RECOVERY_SERVER

    def test_fault_marks_error_and_queue_keeps_draining(self, catalog, replication, sink) -> None:
        for key in ("alpha", "bravo", "charlie"):
            add_tenant(catalog, key)
        replication.outcomes["alpha"] = (1, OperationStatus.FAULTED)
        queue = deque(entry_for(catalog, key) for key in ("alpha", "bravo", "charlie"))
        scheduler = make_scheduler(catalog, replication, sink)
        counters = RunCounters(total=3)

        result = scheduler.run(queue, counters)

        assert result.faulted == ["alpha"]
        assert sorted(result.succeeded) == ["bravo", "charlie"]
        assert state_of(catalog, "alpha") == RecoveryState.ERRORED
        assert counters.completed == 2
        assert counters.errored == 1
        # Still pointed at the recovery copy and back online
        tenant = catalog.get_tenant("alpha")
        assert tenant.active_shard.server == RECOVERY_SERVER
        assert tenant.online_state == OnlineState.ONLINE
        assert not scheduler.in_flight

    def test_progress_never_decreases(self, catalog, replication, sink) -> None:
        keys = [f"tenant{i}" for i in range(5)]
        for i, key in enumerate(keys):
            add_tenant(catalog, key)
            final = OperationStatus.FAULTED if i == 2 else OperationStatus.SUCCEEDED
            replication.outcomes[key] = (i, final)
        scheduler = make_scheduler(catalog, replication, sink)

        scheduler.run(deque(entry_for(catalog, key) for key in keys), RunCounters(total=5))

        assert sink.percentages == sorted(sink.percentages)
        assert len(sink.reports) == 5

    def test_submission_failure_is_a_fault(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha")
        add_tenant(catalog, "bravo")
        replication.submit_failures.add("alpha")
        scheduler = make_scheduler(catalog, replication, sink)
        counters = RunCounters(total=2)

        result = scheduler.run(deque([entry_for(catalog, "alpha"), entry_for(catalog, "bravo")]), counters)

        assert result.faulted == ["alpha"]
        assert result.succeeded == ["bravo"]
        assert state_of(catalog, "alpha") == RecoveryState.ERRORED
        assert counters.errored == 1

    def test_unrecordable_start_skips_resource(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha", recovery_state=RecoveryState.RESETTING)
        add_tenant(catalog, "bravo")
        scheduler = make_scheduler(catalog, replication, sink)

        result = scheduler.run(deque([entry_for(catalog, "alpha"), entry_for(catalog, "bravo")]),
                               RunCounters(total=2))

        assert result.skipped == ["alpha"]
        assert result.succeeded == ["bravo"]
        assert [t.database for t in replication.submitted] == ["bravo"]

    def test_duplicate_entry_is_not_issued_twice(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha")
        replication.outcomes["alpha"] = (3, OperationStatus.SUCCEEDED)
        entry = entry_for(catalog, "alpha")
        scheduler = make_scheduler(catalog, replication, sink)

        result = scheduler.run(deque([entry, entry]), RunCounters(total=1))

        assert len(replication.submitted) == 1
        assert result.succeeded == ["alpha"]


class TestOwners:
    """Tests for pool and server transitions."""

    def test_owners_conclude_after_last_member(self, catalog, replication, sink) -> None:
        for owner in recovery_owners():
            catalog.put_resource(owner)
        add_tenant(catalog, "alpha")
        add_tenant(catalog, "bravo")
        replication.outcomes["bravo"] = (2, OperationStatus.SUCCEEDED)
        pool_key = ResourceKey(name=f"{RECOVERY_SERVER}/{POOL}", kind=ResourceKind.POOL)
        server_key = ResourceKey(name=RECOVERY_SERVER, kind=ResourceKind.SERVER)
        seen = []

        def sleep(seconds):
            seen.append(catalog.get_resource(pool_key).recovery_state)

        scheduler = make_scheduler(catalog, replication, sink, sleep=sleep)
        scheduler.run(deque([entry_for(catalog, "alpha"), entry_for(catalog, "bravo")]), RunCounters(total=2))

        # Still in progress while bravo was pending
        assert seen and all(state == RecoveryState.START_FAILBACK for state in seen)
        assert catalog.get_resource(pool_key).recovery_state == RecoveryState.COMPLETE
        assert catalog.get_resource(server_key).recovery_state == RecoveryState.COMPLETE

    def test_owner_with_faulted_member_is_errored(self, catalog, replication, sink) -> None:
        for owner in recovery_owners():
            catalog.put_resource(owner)
        add_tenant(catalog, "alpha")
        add_tenant(catalog, "bravo")
        replication.outcomes["alpha"] = (0, OperationStatus.FAULTED)
        scheduler = make_scheduler(catalog, replication, sink)

        scheduler.run(deque([entry_for(catalog, "alpha"), entry_for(catalog, "bravo")]), RunCounters(total=2))

        pool = catalog.get_resource(ResourceKey(name=f"{RECOVERY_SERVER}/{POOL}", kind=ResourceKind.POOL))
        assert pool.recovery_state == RecoveryState.ERRORED

    def test_missing_owners_are_ignored(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha")
        scheduler = make_scheduler(catalog, replication, sink)

        result = scheduler.run(deque([entry_for(catalog, "alpha")]), RunCounters(total=1))

        assert result.succeeded == ["alpha"]
        assert scheduler.owner_members == {}

    def test_owner_membership_spans_runs(self, catalog, replication, sink) -> None:
        for owner in recovery_owners():
            catalog.put_resource(owner)
        add_tenant(catalog, "alpha")
        add_tenant(catalog, "bravo")
        pool_key = ResourceKey(name=f"{RECOVERY_SERVER}/{POOL}", kind=ResourceKind.POOL)
        alpha, bravo = entry_for(catalog, "alpha"), entry_for(catalog, "bravo")
        scheduler = make_scheduler(catalog, replication, sink)
        scheduler.track_owners([alpha.tracked, bravo.tracked])

        scheduler.run(deque([alpha]), RunCounters(total=2), track_owners=False)
        assert catalog.get_resource(pool_key).recovery_state == RecoveryState.START_FAILBACK

        scheduler.run(deque([bravo]), RunCounters(total=2), track_owners=False)
        assert catalog.get_resource(pool_key).recovery_state == RecoveryState.COMPLETE

    def test_releasing_an_untracked_member_changes_nothing(self, catalog, replication, sink) -> None:
        for owner in recovery_owners():
            catalog.put_resource(owner)
        add_tenant(catalog, "alpha")
        add_tenant(catalog, "bravo")
        scheduler = make_scheduler(catalog, replication, sink)
        scheduler.track_owners([entry_for(catalog, "alpha").tracked])

        scheduler.release_owners(entry_for(catalog, "bravo"), faulted=True)

        pool_key = ResourceKey(name=f"{RECOVERY_SERVER}/{POOL}", kind=ResourceKind.POOL)
        assert scheduler.owner_members[pool_key] == {"alpha"}
        assert scheduler.owner_faulted == set()


class TestDeadline:
    """Tests for the optional per-operation deadline."""

    def test_stuck_operation_faults_after_deadline(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha")
        replication.outcomes["alpha"] = (1000, OperationStatus.SUCCEEDED)
        now = [datetime(2024, 1, 1, 12, 0, 0)]

        def sleep(seconds):
            now[0] += timedelta(seconds=30)

        scheduler = make_scheduler(catalog, replication, sink, sleep=sleep,
                                   operation_timeout=60, clock=lambda: now[0])
        counters = RunCounters(total=1)

        result = scheduler.run(deque([entry_for(catalog, "alpha")]), counters)

        assert result.faulted == ["alpha"]
        assert state_of(catalog, "alpha") == RecoveryState.ERRORED
        assert counters.errored == 1

    def test_without_deadline_operation_keeps_its_slot(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha")
        replication.outcomes["alpha"] = (4, OperationStatus.SUCCEEDED)
        now = [datetime(2024, 1, 1, 12, 0, 0)]

        def sleep(seconds):
            now[0] += timedelta(hours=1)

        scheduler = make_scheduler(catalog, replication, sink, sleep=sleep, clock=lambda: now[0])

        result = scheduler.run(deque([entry_for(catalog, "alpha")]), RunCounters(total=1))

        assert result.succeeded == ["alpha"]


class TestRunBehaviour:
    """Tests for polling, metrics and re-entrancy."""

    def test_adaptive_poll_interval(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha")
        replication.outcomes["alpha"] = (4, OperationStatus.SUCCEEDED)
        sleeps = []
        scheduler = BoundedConcurrencyScheduler(
            state_machine=RecoveryStateMachine(catalog),
            catalog=catalog,
            primitive=replication,
            direction=Direction.REVERSE,
            reporter=ProgressReporter("repatriate", sink),
            min_poll_interval=1.0,
            max_poll_interval=3.0,
            sleep=sleeps.append,
        )

        scheduler.run(deque([entry_for(catalog, "alpha")]), RunCounters(total=1))

        assert sleeps == [1.5, 2.25, 3.0, 3.0]

    def test_reentrant_run_is_refused(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha")
        replication.outcomes["alpha"] = (1, OperationStatus.SUCCEEDED)
        errors = []

        def sleep(seconds):
            try:
                scheduler.run(deque(), RunCounters())
            except SchedulerBusyError as e:
                errors.append(e)

        scheduler = make_scheduler(catalog, replication, sink, sleep=sleep)
        scheduler.run(deque([entry_for(catalog, "alpha")]), RunCounters(total=1))

        assert len(errors) == 1

    def test_empty_queue_issues_nothing(self, catalog, replication, sink) -> None:
        scheduler = make_scheduler(catalog, replication, sink)

        result = scheduler.run(deque(), RunCounters())

        assert replication.submitted == []
        assert result.succeeded == []

    def test_metrics(self, catalog, replication, sink) -> None:
        add_tenant(catalog, "alpha")
        add_tenant(catalog, "bravo")
        replication.outcomes["bravo"] = (0, OperationStatus.FAULTED)
        metrics = Metrics(registry=CollectorRegistry())
        scheduler = make_scheduler(catalog, replication, sink, metrics=metrics)

        scheduler.run(deque([entry_for(catalog, "alpha"), entry_for(catalog, "bravo")]), RunCounters(total=2))

        assert metrics.operations_submitted.labels(direction="repatriate")._value.get() == 2
        assert metrics.operations_succeeded.labels(direction="repatriate")._value.get() == 1
        assert metrics.operations_faulted.labels(direction="repatriate")._value.get() == 1
        assert metrics.operations_in_flight.labels(direction="repatriate")._value.get() == 0
