from prometheus_client import REGISTRY, Counter, Gauge

class Metrics:
    """Prometheus metrics for the ShardShift orchestrator."""
    def __init__(self, registry=REGISTRY):
        # Operation lifecycle
        self.operations_submitted = Counter(
            'shardshift_operations_submitted_total',
            'Number of migration operations issued',
            ['direction'],
            registry=registry
        )
        self.operations_succeeded = Counter(
            'shardshift_operations_succeeded_total',
            'Number of migration operations that completed successfully',
            ['direction'],
            registry=registry
        )
        self.operations_faulted = Counter(
            'shardshift_operations_faulted_total',
            'Number of migration operations that faulted or timed out',
            ['direction'],
            registry=registry
        )
        self.operations_in_flight = Gauge(
            'shardshift_operations_in_flight',
            'Migration operations currently in flight',
            ['direction'],
            registry=registry
        )

        # Classification
        self.resources_classified = Counter(
            'shardshift_resources_classified_total',
            'Tenant databases classified, by outcome',
            ['direction', 'outcome'],
            registry=registry
        )

        # State machine
        self.transition_failures = Counter(
            'shardshift_transition_failures_total',
            'Recovery state transitions that could not be written',
            ['action'],
            registry=registry
        )

        # Progress
        self.progress_percentage = Gauge(
            'shardshift_progress_percentage',
            'Completion percentage of the current run',
            ['label'],
            registry=registry
        )

        # Circuit breaker metrics
        self.circuit_breaker_state = Gauge(
            'shardshift_circuit_breaker_state',
            'Circuit breaker state (0=closed, 1=open, 2=half-open)',
            ['circuit_name'],
            registry=registry
        )
        self.circuit_breaker_failures = Counter(
            'shardshift_circuit_breaker_failures',
            'Number of failures tracked by circuit breakers',
            ['circuit_name'],
            registry=registry
        )

        # Catalog connection
        self.catalog_connection_status = Gauge(
            'shardshift_catalog_connection_status',
            'Valkey catalog connection status (1=connected, 0=disconnected)',
            registry=registry
        )
