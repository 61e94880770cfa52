"""Command line entry point for the ShardShift orchestrator"""
import sys
import signal
import argparse
import structlog
from prometheus_client import start_http_server

from shardshift.config.settings import Settings
from shardshift.custom_logging import configure_logging
from shardshift.exceptions import RunAbortedError
from shardshift.integrations.replication import ReplicationClient
from shardshift.migration.processor import RecoveryJob
from shardshift.migration.progress import format_progress
from shardshift.models.models import Direction
from shardshift.monitoring.metrics import Metrics
from shardshift.persistence.catalog import ValkeyResourceCatalog
from shardshift.persistence.resilient_valkey import ResilientValkeyClient
from shardshift.resilience.circuit_breaker import CircuitBreaker

logger = structlog.get_logger()

class Orchestrator:
    """Wires the catalog, replication service and job for one run"""
    def __init__(self, settings: Settings, serve_metrics: bool = False):
        self.settings = settings
        self.serve_metrics = serve_metrics

        # Initialize components
        self._initialize_metrics()
        self._initialize_valkey()
        self._initialize_logging()
        self._initialize_replication()

        self.catalog = ValkeyResourceCatalog(self.valkey_client, prefix=self.settings.CATALOG_PREFIX)

        # Register signal handlers
        signal.signal(signal.SIGTERM, self._graceful_shutdown)
        signal.signal(signal.SIGINT, self._graceful_shutdown)

    def _initialize_valkey(self):
        """Initialize Valkey client"""
        self.valkey_client = ResilientValkeyClient(
            host=self.settings.VALKEY_HOST,
            port=self.settings.VALKEY_PORT,
            db=self.settings.VALKEY_DB,
            metrics=self.metrics
        )

    def _initialize_logging(self):
        """Initialize logging"""
        self.log_handler = configure_logging(self.settings, self.valkey_client)

    def _initialize_metrics(self):
        """Initialize metrics"""
        self.metrics = Metrics()
        if self.serve_metrics:
            start_http_server(self.settings.PROMETHEUS_PORT)
            logger.info("metrics.serving", port=self.settings.PROMETHEUS_PORT)

    def _initialize_replication(self):
        """Initialize the replication service client behind a circuit breaker"""
        self.replication_circuit = CircuitBreaker("replication_api", metrics=self.metrics)
        self.replication = ReplicationClient(self.settings, self.replication_circuit, self.metrics)

    def _graceful_shutdown(self, signum, frame):
        """Handle shutdown signals; the next run resumes from the catalog"""
        logger.warning("orchestrator.interrupted", signal=signum)
        try:
            self.valkey_client.close()
        except Exception as e:
            logger.error("Error closing Valkey connection", error=str(e))
        sys.exit(130)

    def run(self, direction: Direction):
        job = RecoveryJob(self.settings, self.catalog, self.replication, direction, self.metrics)
        return job.run()


def positive_int(value):
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="shardshift",
        description="Fail tenant databases over to the recovery region, or repatriate them."
    )
    parser.add_argument("direction", choices=[d.value for d in Direction],
                        help="failover moves tenants to the recovery region, repatriate brings them back")
    parser.add_argument("--max-concurrency", type=positive_int,
                        help="maximum operations in flight (default from MAX_CONCURRENT_OPERATIONS)")
    parser.add_argument("--operation-timeout", type=float,
                        help="seconds before a pending operation is marked errored")
    parser.add_argument("--metrics", action="store_true", help="serve Prometheus metrics while running")
    parser.add_argument("-v", "--verbose", action="store_true", help="human readable debug output")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    overrides = {"VERBOSE": args.verbose}
    if args.max_concurrency is not None:
        overrides["MAX_CONCURRENT_OPERATIONS"] = args.max_concurrency
    if args.operation_timeout is not None:
        overrides["OPERATION_TIMEOUT"] = args.operation_timeout
    settings = Settings(**overrides)

    try:
        orchestrator = Orchestrator(settings, serve_metrics=args.metrics)
        summary = orchestrator.run(Direction(args.direction))
    except RunAbortedError as e:
        logger.error("orchestrator.aborted", error=str(e))
        return 2

    print(f"{summary.direction.value}: {format_progress(summary.completed, summary.total)}")
    if summary.faulted or summary.skipped or summary.deferred:
        print(f"errored: {len(summary.faulted) + len(summary.skipped)}, deferred: {len(summary.deferred)}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
