"""
Recovery state machine shared by servers, pools and databases.

Forward path:   none -> startFailover -> failedOver
Reverse path:   failedOver|replicated -> startFailback -> complete
Reset path:     recovering|failedOver|replicated|startFailback -> resetting -> complete
Faults:         startFailover|startFailback -> errored

startRecovery and markReplicated are recorded by provisioning and the
replication service outside this orchestrator; they are kept here so the
table covers every state a resource can be found in.

Every transition is idempotent: applying an action to a resource that is
already in the action's result state succeeds without a write.
"""
from typing import Dict, FrozenSet, Tuple, Union
import structlog

from shardshift.exceptions import InvalidTransitionError
from shardshift.interfaces import ResourceCatalog
from shardshift.models.models import RecoveryAction, RecoveryState, RegionRole, ResourceKey, TenantResource

logger = structlog.get_logger()

S = RecoveryState

TRANSITIONS: Dict[RecoveryAction, Tuple[FrozenSet[RecoveryState], RecoveryState]] = {
    RecoveryAction.START_RECOVERY: (frozenset({S.NONE, S.COMPLETE, S.ERRORED}), S.RECOVERING),
    RecoveryAction.START_RESET: (frozenset({S.RECOVERING, S.FAILED_OVER, S.REPLICATED, S.START_FAILBACK, S.ERRORED}),
                                 S.RESETTING),
    RecoveryAction.END_RESET: (frozenset({S.RECOVERING, S.RESETTING}), S.COMPLETE),
    RecoveryAction.START_FAILOVER: (frozenset({S.NONE, S.FAILED_OVER, S.COMPLETE, S.ERRORED}), S.START_FAILOVER),
    RecoveryAction.END_FAILOVER: (frozenset({S.START_FAILOVER}), S.FAILED_OVER),
    RecoveryAction.MARK_REPLICATED: (frozenset({S.FAILED_OVER}), S.REPLICATED),
    RecoveryAction.START_FAILBACK: (frozenset({S.FAILED_OVER, S.REPLICATED, S.ERRORED}), S.START_FAILBACK),
    RecoveryAction.CONCLUDE: (frozenset({S.START_FAILOVER, S.START_FAILBACK}), S.COMPLETE),
    RecoveryAction.MARK_ERROR: (frozenset({S.START_FAILOVER, S.START_FAILBACK}), S.ERRORED),
}


def result_state(action: RecoveryAction) -> RecoveryState:
    """State a resource ends up in after a successful action"""
    return TRANSITIONS[action][1]


def apply_action(current: RecoveryState, action: RecoveryAction) -> RecoveryState:
    """
    Resolve the state reached by applying an action.

    Args:
        current: The resource's recorded state
        action: The requested action

    Returns:
        RecoveryState: The resulting state (equal to current for a no-op)

    Raises:
        InvalidTransitionError: If the action is not allowed from current
    """
    allowed, target = TRANSITIONS[action]
    if current == target:
        return current
    if current not in allowed:
        raise InvalidTransitionError(current, action)
    return target


class RecoveryStateMachine:
    """Sole mutator of recorded recovery state"""

    def __init__(self, catalog: ResourceCatalog, metrics=None):
        self.catalog = catalog
        self.metrics = metrics

    def update_recovery_state(self, resource: Union[TenantResource, ResourceKey],
                              action: RecoveryAction) -> bool:
        """
        Apply an action to a resource through the catalog's atomic write.

        Failures are logged and reported as False so the caller can carry on
        with the rest of the batch; the next run re-probes the resource.

        A tenant database copy also mirrors its new state onto the tenant
        record. The copy stays authoritative, so a failed mirror write is
        logged and does not change the result.

        Args:
            resource: The resource or its catalog key
            action: The action to apply

        Returns:
            bool: True if the resource is now in the action's result state
        """
        key = resource.key if isinstance(resource, TenantResource) else resource
        try:
            updated = self.catalog.transition_state(key, action)
        except InvalidTransitionError as e:
            logger.warning("recovery_state.invalid_transition",
                           resource=str(key),
                           action=action.value,
                           current_state=e.current_state.value)
            updated = False
        except Exception as e:
            logger.error("recovery_state.write_failed",
                         resource=str(key),
                         action=action.value,
                         error=str(e))
            updated = False

        if updated:
            logger.debug("recovery_state.updated",
                         resource=str(key),
                         action=action.value,
                         state=result_state(action).value)
            if isinstance(resource, TenantResource) and resource.tenant_key \
                    and resource.region_role == RegionRole.RECOVERY:
                self._mirror_to_tenant(resource.tenant_key, result_state(action))
        elif self.metrics:
            self.metrics.transition_failures.labels(action=action.value).inc()

        return updated

    def _mirror_to_tenant(self, tenant_key: str, state: RecoveryState):
        try:
            mirrored = self.catalog.set_tenant_recovery_state(tenant_key, state)
        except Exception as e:
            logger.warning("recovery_state.tenant_mirror_failed", tenant=tenant_key, error=str(e))
            return
        if not mirrored:
            logger.warning("recovery_state.tenant_mirror_failed", tenant=tenant_key, error="tenant not found")
