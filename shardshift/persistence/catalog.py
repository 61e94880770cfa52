"""Valkey-backed resource catalog"""
import uuid
from typing import Callable, List, Optional, Type, TypeVar
import structlog
from pydantic import BaseModel
from valkey.exceptions import WatchError

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

M = TypeVar("M", bound=BaseModel)


class ValkeyResourceCatalog:
    """
    Stores resources and tenants as JSON documents in Valkey.

    Resources are also indexed in one set per recovery state so that filtered
    listings by state do not scan every document. State transitions run as
    optimistic transactions so concurrent or replayed writes stay consistent.
    """

    def __init__(self, valkey_client, prefix: str = "shardshift:", max_write_attempts: int = 10):
        self.valkey_client = valkey_client
        self.prefix = prefix
        self.max_write_attempts = max_write_attempts
        self.resources_key = f"{prefix}resources"
        self.tenants_key = f"{prefix}tenants"
        self.lock_tokens = {}

    def _resource_key(self, key: ResourceKey) -> str:
        return f"{self.prefix}resource:{key.kind.value}:{key.name}"

    def _state_key(self, state: RecoveryState) -> str:
        return f"{self.prefix}state:{state.value}"

    def _tenant_key(self, tenant_key: str) -> str:
        return f"{self.prefix}tenant:{tenant_key}"

    def _lock_key(self, name: str) -> str:
        return f"{self.prefix}lock:{name}"

    def ping(self) -> bool:
        try:
            return bool(self.valkey_client.ping())
        except Exception as e:
            logger.error("catalog.ping_failed", error=str(e))
            return False

    def list_resources(self, resource_filter: Optional[ResourceFilter] = None) -> List[TenantResource]:
        """List resources matching a filter, using the state index when possible"""
        resource_filter = resource_filter or ResourceFilter()
        if resource_filter.recovery_state is not None:
            keys = self.valkey_client.smembers(self._state_key(resource_filter.recovery_state))
        else:
            keys = self.valkey_client.smembers(self.resources_key)

        resources = []
        for key in sorted(keys):
            data = self.valkey_client.get(key)
            if not data:
                continue
            resource = TenantResource.model_validate_json(data)
            if resource_filter.matches(resource):
                resources.append(resource)
        return resources

    def find_resource(self, key: ResourceKey) -> Optional[TenantResource]:
        data = self.valkey_client.get(self._resource_key(key))
        if not data:
            return None
        return TenantResource.model_validate_json(data)

    def get_resource(self, key: ResourceKey) -> TenantResource:
        resource = self.find_resource(key)
        if resource is None:
            raise ResourceNotFoundError(f"No resource {key}")
        return resource

    def put_resource(self, resource: TenantResource) -> None:
        """Write a resource record as provisioned, replacing any previous one"""
        doc_key = self._resource_key(resource.key)
        with self.valkey_client.pipeline() as pipe:
            pipe.set(doc_key, resource.model_dump_json())
            pipe.sadd(self.resources_key, doc_key)
            for state in RecoveryState:
                if state != resource.recovery_state:
                    pipe.srem(self._state_key(state), doc_key)
            pipe.sadd(self._state_key(resource.recovery_state), doc_key)
            pipe.execute()

    def transition_state(self, key: ResourceKey, action: RecoveryAction) -> bool:
        """
        Atomically apply an action to a resource's recorded state.

        Returns:
            bool: True once the resource is in the action's result state

        Raises:
            ResourceNotFoundError: If the resource does not exist
            InvalidTransitionError: If the action is not allowed from the current state
        """
        doc_key = self._resource_key(key)
        for _ in range(self.max_write_attempts):
            with self.valkey_client.pipeline() as pipe:
                try:
                    pipe.watch(doc_key)
                    data = pipe.get(doc_key)
                    if not data:
                        raise ResourceNotFoundError(f"No resource {key}")
                    resource = TenantResource.model_validate_json(data)
                    previous = resource.recovery_state
                    resource.recovery_state = apply_action(previous, action)
                    if resource.recovery_state == previous:
                        pipe.unwatch()
                        return True

                    pipe.multi()
                    pipe.set(doc_key, resource.model_dump_json())
                    pipe.srem(self._state_key(previous), doc_key)
                    pipe.sadd(self._state_key(resource.recovery_state), doc_key)
                    pipe.execute()
                    return True
                except WatchError:
                    logger.debug("catalog.transition_conflict", resource=str(key), action=action.value)

        logger.error("catalog.transition_gave_up", resource=str(key), action=action.value)
        return False

    def list_tenants(self) -> List[Tenant]:
        tenants = []
        for key in sorted(self.valkey_client.smembers(self.tenants_key)):
            data = self.valkey_client.get(key)
            if data:
                tenants.append(Tenant.model_validate_json(data))
        return tenants

    def get_tenant(self, tenant_key: str) -> Tenant:
        data = self.valkey_client.get(self._tenant_key(tenant_key))
        if not data:
            raise ResourceNotFoundError(f"No tenant {tenant_key}")
        return Tenant.model_validate_json(data)

    def put_tenant(self, tenant: Tenant) -> None:
        doc_key = self._tenant_key(tenant.key)
        with self.valkey_client.pipeline() as pipe:
            pipe.set(doc_key, tenant.model_dump_json())
            pipe.sadd(self.tenants_key, doc_key)
            pipe.execute()

    def _update_document(self, doc_key: str, model: Type[M], mutate: Callable[[M], None]) -> bool:
        for _ in range(self.max_write_attempts):
            with self.valkey_client.pipeline() as pipe:
                try:
                    pipe.watch(doc_key)
                    data = pipe.get(doc_key)
                    if not data:
                        return False
                    document = model.model_validate_json(data)
                    mutate(document)
                    pipe.multi()
                    pipe.set(doc_key, document.model_dump_json())
                    pipe.execute()
                    return True
                except WatchError:
                    continue
        return False

    def update_shard_pointer(self, tenant_key: str, location: ShardLocation) -> bool:
        """Re-point a tenant to a new active shard in one write"""
        def repoint(tenant: Tenant) -> None:
            tenant.active_shard = location

        try:
            updated = self._update_document(self._tenant_key(tenant_key), Tenant, repoint)
        except Exception as e:
            logger.error("catalog.shard_pointer_failed", tenant=tenant_key, error=str(e))
            return False
        if not updated:
            logger.warning("catalog.shard_pointer_not_updated", tenant=tenant_key)
        return updated

    def set_tenant_online_state(self, tenant_key: str, state: OnlineState) -> bool:
        def mark(tenant: Tenant) -> None:
            tenant.online_state = state

        try:
            return self._update_document(self._tenant_key(tenant_key), Tenant, mark)
        except Exception as e:
            logger.error("catalog.online_state_failed", tenant=tenant_key, error=str(e))
            return False

    def set_tenant_recovery_state(self, tenant_key: str, state: RecoveryState) -> bool:
        """Mirror the tracked copy's recovery state onto the tenant record"""
        def mark(tenant: Tenant) -> None:
            tenant.recovery_state = state

        return self._update_document(self._tenant_key(tenant_key), Tenant, mark)

    def acquire_run_lock(self, name: str, ttl: int) -> bool:
        token = uuid.uuid4().hex
        acquired = bool(self.valkey_client.set(self._lock_key(name), token, nx=True, ex=ttl))
        if acquired:
            self.lock_tokens[name] = token
        return acquired

    def release_run_lock(self, name: str) -> None:
        token = self.lock_tokens.pop(name, None)
        if token is None:
            return
        lock_key = self._lock_key(name)
        # Only drop the lock if it still carries our token
        if self.valkey_client.get(lock_key) == token:
            self.valkey_client.delete(lock_key)
