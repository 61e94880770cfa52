"""In-memory resource catalog for dry runs and tests"""
import threading
from typing import Dict, List, Optional
import structlog

from shardshift.exceptions import ResourceNotFoundError
from shardshift.models.models import (
    OnlineState,
    RecoveryAction,
    RecoveryState,
    ResourceFilter,
    ResourceKey,
    ShardLocation,
    Tenant,
    TenantResource,
)
from shardshift.recovery.state_machine import apply_action

logger = structlog.get_logger()


class InMemoryResourceCatalog:
    """Catalog kept in process memory. Writes are serialized by a lock."""

    def __init__(self, resources: Optional[List[TenantResource]] = None,
                 tenants: Optional[List[Tenant]] = None):
        self.lock = threading.RLock()
        self.resources: Dict[ResourceKey, TenantResource] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.locks: Dict[str, bool] = {}
        for resource in resources or []:
            self.put_resource(resource)
        for tenant in tenants or []:
            self.put_tenant(tenant)

    def ping(self) -> bool:
        return True

    def list_resources(self, resource_filter: Optional[ResourceFilter] = None) -> List[TenantResource]:
        resource_filter = resource_filter or ResourceFilter()
        with self.lock:
            return [r.model_copy() for r in self.resources.values() if resource_filter.matches(r)]

    def find_resource(self, key: ResourceKey) -> Optional[TenantResource]:
        with self.lock:
            resource = self.resources.get(key)
            return resource.model_copy() if resource else None

    def get_resource(self, key: ResourceKey) -> TenantResource:
        resource = self.find_resource(key)
        if resource is None:
            raise ResourceNotFoundError(f"No resource {key}")
        return resource

    def put_resource(self, resource: TenantResource) -> None:
        with self.lock:
            self.resources[resource.key] = resource.model_copy()

    def transition_state(self, key: ResourceKey, action: RecoveryAction) -> bool:
        with self.lock:
            resource = self.resources.get(key)
            if resource is None:
                raise ResourceNotFoundError(f"No resource {key}")
            resource.recovery_state = apply_action(resource.recovery_state, action)
            return True

    def list_tenants(self) -> List[Tenant]:
        with self.lock:
            return [t.model_copy() for t in self.tenants.values()]

    def get_tenant(self, tenant_key: str) -> Tenant:
        with self.lock:
            tenant = self.tenants.get(tenant_key)
            if tenant is None:
                raise ResourceNotFoundError(f"No tenant {tenant_key}")
            return tenant.model_copy()

    def put_tenant(self, tenant: Tenant) -> None:
        with self.lock:
            self.tenants[tenant.key] = tenant.model_copy()

    def update_shard_pointer(self, tenant_key: str, location: ShardLocation) -> bool:
        with self.lock:
            tenant = self.tenants.get(tenant_key)
            if tenant is None:
                logger.warning("catalog.tenant_missing", tenant=tenant_key)
                return False
            tenant.active_shard = location
            return True

    def set_tenant_online_state(self, tenant_key: str, state: OnlineState) -> bool:
        with self.lock:
            tenant = self.tenants.get(tenant_key)
            if tenant is None:
                logger.warning("catalog.tenant_missing", tenant=tenant_key)
                return False
            tenant.online_state = state
            return True

    def set_tenant_recovery_state(self, tenant_key: str, state: RecoveryState) -> bool:
        with self.lock:
            tenant = self.tenants.get(tenant_key)
            if tenant is None:
                return False
            tenant.recovery_state = state
            return True

    def acquire_run_lock(self, name: str, ttl: int) -> bool:
        with self.lock:
            if self.locks.get(name):
                return False
            self.locks[name] = True
            return True

    def release_run_lock(self, name: str) -> None:
        with self.lock:
            self.locks.pop(name, None)
