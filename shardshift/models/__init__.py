"""Data models for the ShardShift orchestrator."""

from shardshift.models.models import (
    BatchMode,
    Direction,
    EligibleResource,
    MigrationOperation,
    OnlineState,
    OperationStatus,
    RecoveryAction,
    RecoveryState,
    RegionRole,
    ReplicationLink,
    ReplicationRole,
    ReplicationState,
    ResourceFilter,
    ResourceKey,
    ResourceKind,
    RunSummary,
    ShardLocation,
    Tenant,
    TenantResource
)

__all__ = [
    'BatchMode',
    'Direction',
    'EligibleResource',
    'MigrationOperation',
    'OnlineState',
    'OperationStatus',
    'RecoveryAction',
    'RecoveryState',
    'RegionRole',
    'ReplicationLink',
    'ReplicationRole',
    'ReplicationState',
    'ResourceFilter',
    'ResourceKey',
    'ResourceKind',
    'RunSummary',
    'ShardLocation',
    'Tenant',
    'TenantResource'
]
