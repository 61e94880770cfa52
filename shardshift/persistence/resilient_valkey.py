"""
Valkey connection for the ShardShift catalog.

The catalog is the only durable state a run has, so the connection is
established with retries and watched by a background monitor that swaps in
a fresh client when pings start failing.
"""
import socket
import threading
import structlog
import valkey
from tenacity import RetryError, Retrying, stop_after_attempt, wait_fixed

from shardshift.exceptions import CatalogUnavailableError

logger = structlog.get_logger()


class ResilientValkeyClient:
    """
    Valkey client proxy with connection retries and a reconnecting monitor.

    Attribute access is forwarded to the current underlying client, so the
    catalog can use it exactly like a `valkey.Valkey`.
    """
    def __init__(self, host, port, db, max_retries=5, retry_interval=2,
                 health_check_interval=30, socket_timeout=10, metrics=None):
        """
        Args:
            host: Valkey host
            port: Valkey port
            db: Valkey database
            max_retries: Connection attempts before giving up
            retry_interval: Seconds between connection attempts
            health_check_interval: Seconds between monitor pings (0 disables the monitor)
            socket_timeout: Socket and connect timeout for each command
            metrics: Optional Metrics instance for the connection gauge
        """
        self.host = host
        self.port = port
        self.db = db
        self.max_retries = max_retries
        self.retry_interval = retry_interval
        self.health_check_interval = health_check_interval
        self.socket_timeout = socket_timeout
        self.metrics = metrics
        self.reconnections = 0
        self._stopped = threading.Event()
        self._monitor = None

        self.client = self._connect()
        if health_check_interval:
            self._monitor = threading.Thread(target=self._watch, name="valkey-monitor", daemon=True)
            self._monitor.start()

    def _new_client(self):
        return valkey.Valkey(
            host=self.host,
            port=self.port,
            db=self.db,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
            socket_keepalive=True,
            socket_keepalive_options={
                socket.TCP_KEEPINTVL: 30,
                socket.TCP_KEEPCNT: 3
            },
            retry_on_timeout=True,
            decode_responses=True
        )

    def _connect(self):
        """
        Returns:
            A connected valkey.Valkey client

        Raises:
            CatalogUnavailableError: If no attempt could ping the server
        """
        try:
            for attempt in Retrying(stop=stop_after_attempt(self.max_retries),
                                    wait=wait_fixed(self.retry_interval)):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    try:
                        client = self._new_client()
                        client.ping()
                    except Exception as e:
                        logger.warning("catalog.connection_attempt_failed", attempt=number, error=str(e))
                        raise
                    logger.info("catalog.connected", host=self.host, port=self.port, attempt=number)
                    self._publish(True)
                    return client
        except RetryError as e:
            self._publish(False)
            raise CatalogUnavailableError(
                f"Failed to connect to Valkey at {self.host}:{self.port} after {self.max_retries} attempts"
            ) from e

    def _watch(self):
        """Ping on an interval until closed; reconnect when a ping fails"""
        while not self._stopped.wait(self.health_check_interval):
            if self.check_connection():
                continue
            logger.warning("catalog.reconnecting", host=self.host)
            self._publish(False)
            try:
                self.client = self._connect()
                self.reconnections += 1
            except CatalogUnavailableError as e:
                logger.error("catalog.reconnect_failed", error=str(e))

    def _publish(self, connected: bool):
        if self.metrics:
            self.metrics.catalog_connection_status.set(1 if connected else 0)

    def check_connection(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception:
            return False

    def close(self):
        """Stop the monitor and release the connection pool"""
        self._stopped.set()
        self.client.close()

    def __getattr__(self, name):
        return getattr(self.client, name)
