"""
Contracts for the collaborators the orchestrator drives.

The catalog owns all durable state. The topology probe and the migration
primitive front the storage layer's replication service, which executes
operations remotely; the orchestrator only submits and polls them.
"""
from typing import Callable, List, Optional, Protocol, runtime_checkable

from shardshift.models.models import (
    OnlineState,
    OperationStatus,
    RecoveryAction,
    RecoveryState,
    ReplicationLink,
    ResourceFilter,
    ResourceKey,
    ShardLocation,
    Tenant,
    TenantResource,
)

# (label, percentage, completed, total)
ReporterSink = Callable[[str, int, int, int], None]


@runtime_checkable
class ResourceCatalog(Protocol):
    """Durable store of tenant resources and tenants"""

    def ping(self) -> bool: ...

    def list_resources(self, resource_filter: Optional[ResourceFilter] = None) -> List[TenantResource]: ...

    def get_resource(self, key: ResourceKey) -> TenantResource: ...

    def find_resource(self, key: ResourceKey) -> Optional[TenantResource]: ...

    def put_resource(self, resource: TenantResource) -> None: ...

    def transition_state(self, key: ResourceKey, action: RecoveryAction) -> bool: ...

    def list_tenants(self) -> List[Tenant]: ...

    def get_tenant(self, tenant_key: str) -> Tenant: ...

    def put_tenant(self, tenant: Tenant) -> None: ...

    def update_shard_pointer(self, tenant_key: str, location: ShardLocation) -> bool: ...

    def set_tenant_online_state(self, tenant_key: str, state: OnlineState) -> bool: ...

    def set_tenant_recovery_state(self, tenant_key: str, state: RecoveryState) -> bool: ...

    def acquire_run_lock(self, name: str, ttl: int) -> bool: ...

    def release_run_lock(self, name: str) -> None: ...


@runtime_checkable
class TopologyProbe(Protocol):
    """Reports replication role and catch-up status of database copies"""

    def get_replication_link(self, server: str, database: str, partner_region: str) -> ReplicationLink: ...

    def has_data_changed(self, location: ShardLocation) -> bool: ...


@runtime_checkable
class OperationHandle(Protocol):
    """Non-blocking view of a remotely executing operation"""

    id: str

    def poll(self) -> OperationStatus: ...


@runtime_checkable
class MigrationPrimitive(Protocol):
    """Starts asynchronous failovers against the replication service"""

    def submit_failover(self, target: ShardLocation, replication_link_id: Optional[str]) -> OperationHandle: ...
