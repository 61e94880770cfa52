"""Replication service integration: topology probe and asynchronous failover primitive"""
from typing import Any, Dict, Optional
import requests
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shardshift.exceptions import OperationSubmitError, ReplicationProbeError
from shardshift.integrations.replication_request import ReplicationRequest
from shardshift.models.models import (
    OperationStatus,
    ReplicationLink,
    ReplicationRole,
    ReplicationState,
    ShardLocation,
)
from shardshift.resilience.circuit_breaker import CircuitBreakerOpenError

logger = structlog.get_logger()

# Service-side operation states mapped onto the orchestrator's three outcomes
OPERATION_STATUSES = {
    "notstarted": OperationStatus.PENDING,
    "inprogress": OperationStatus.PENDING,
    "pending": OperationStatus.PENDING,
    "succeeded": OperationStatus.SUCCEEDED,
    "completed": OperationStatus.SUCCEEDED,
    "failed": OperationStatus.FAULTED,
    "canceled": OperationStatus.FAULTED,
    "cancelled": OperationStatus.FAULTED,
}


class RemoteOperation:
    """Handle for a failover executing in the replication service"""

    def __init__(self, client, operation_id: str, target: ShardLocation):
        self.client = client
        self.id = operation_id
        self.target = target
        self.status = OperationStatus.PENDING
        self.error: Optional[str] = None

    def poll(self) -> OperationStatus:
        """
        Check the operation once without blocking.

        A failed status query is logged and reported as still pending; the
        next sweep asks again.
        """
        if self.status.is_terminal:
            return self.status
        try:
            self.status, self.error = self.client.get_operation_status(self.id)
        except Exception as e:
            logger.warning("replication.operation_poll_failed", operation_id=self.id, error=str(e))
        return self.status


class ReplicationClient:
    """Handles replication service API interactions"""
    def __init__(self, settings, circuit, metrics=None, request: Optional[ReplicationRequest] = None):
        self.settings = settings
        self.circuit = circuit
        self.metrics = metrics
        self.base_url = str(settings.REPLICATION_API_URL).rstrip("/")
        self.request = request or ReplicationRequest(
            token=settings.REPLICATION_API_TOKEN,
            timeout=settings.REPLICATION_API_TIMEOUT
        )

    def _database_url(self, server: str, database: str) -> str:
        return f"{self.base_url}/servers/{server}/databases/{database}"

    def _fetch(self, url: str, params: Optional[Dict[str, Any]] = None):
        """GET that fails on server errors, so the circuit counts them"""
        response = self.request.get(url, params)
        if response.status_code >= 500:
            raise ReplicationProbeError(f"GET {url} returned {response.status_code}: {response.text}")
        return response

    def _post(self, url: str, payload: Dict[str, Any]):
        response = self.request.post(url, payload)
        if response.status_code >= 500:
            raise OperationSubmitError(f"POST {url} returned {response.status_code}: {response.text}")
        return response

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        reraise=True
    )
    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self.circuit.execute(self._fetch, url, params)
        if response.status_code != 200:
            raise ReplicationProbeError(f"GET {url} returned {response.status_code}: {response.text}")
        return response.json()

    def get_replication_link(self, server: str, database: str, partner_region: str) -> ReplicationLink:
        """
        Report a database's replication role relative to a partner region.

        Raises:
            ReplicationProbeError: If the topology cannot be read; callers treat
                this as transient and retry on a later cycle
        """
        url = f"{self._database_url(server, database)}/replicationLinks"
        try:
            body = self._get_json(url, {"partnerRegion": partner_region})
            return ReplicationLink(
                role=ReplicationRole(body["role"].lower()),
                state=ReplicationState(body.get("state", "catchup").lower()),
                link_id=body.get("linkId"),
                partner_region=body.get("partnerRegion", partner_region)
            )
        except ReplicationProbeError:
            raise
        except CircuitBreakerOpenError as e:
            raise ReplicationProbeError(f"Replication service unavailable: {e}") from e
        except Exception as e:
            raise ReplicationProbeError(f"Failed to probe {server}/{database}: {e}") from e

    def has_data_changed(self, location: ShardLocation) -> bool:
        """Whether a recovery-region copy was written to since it was recovered"""
        url = f"{self._database_url(location.server, location.database)}/dataChanged"
        try:
            body = self._get_json(url)
        except ReplicationProbeError:
            raise
        except Exception as e:
            raise ReplicationProbeError(f"Failed to check changes on {location}: {e}") from e
        return bool(body.get("changed"))

    def submit_failover(self, target: ShardLocation, replication_link_id: Optional[str]) -> RemoteOperation:
        """
        Ask the replication service to promote a database copy to primary.

        Without a link id the service seeds a replica first, then fails over.

        Raises:
            OperationSubmitError: If the service does not accept the request
        """
        url = f"{self._database_url(target.server, target.database)}/failover"
        try:
            response = self.circuit.execute(
                self._post,
                url,
                {"replicationLinkId": replication_link_id}
            )
        except Exception as e:
            raise OperationSubmitError(f"Failover request for {target} failed: {e}") from e

        if response.status_code not in (200, 201, 202):
            raise OperationSubmitError(
                f"Failover request for {target} returned {response.status_code}: {response.text}"
            )

        operation_id = response.json()["operationId"]
        logger.info("replication.failover_submitted",
                    target=str(target),
                    link_id=replication_link_id,
                    operation_id=operation_id)
        return RemoteOperation(self, operation_id, target)

    def get_operation_status(self, operation_id: str):
        """
        Returns:
            tuple: (OperationStatus, error message or None)
        """
        body = self._get_json(f"{self.base_url}/operations/{operation_id}")
        raw = str(body.get("status", "pending")).lower()
        status = OPERATION_STATUSES.get(raw)
        if status is None:
            logger.warning("replication.unknown_operation_status", operation_id=operation_id, status=raw)
            status = OperationStatus.PENDING
        return status, body.get("error")
