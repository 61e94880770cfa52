"""Shared test fixtures for the ShardShift tests."""

from tests.fixtures.replication import ScriptedOperation, ScriptedReplicationService
from tests.fixtures.world import (
    ORIGIN_REGION,
    ORIGIN_SERVER,
    POOL,
    RECOVERY_REGION,
    RECOVERY_SERVER,
    add_tenant,
    origin_copy,
    recovery_copy,
    recovery_owners,
    tenant,
)

__all__ = [
    "ORIGIN_REGION",
    "ORIGIN_SERVER",
    "POOL",
    "RECOVERY_REGION",
    "RECOVERY_SERVER",
    "ScriptedOperation",
    "ScriptedReplicationService",
    "add_tenant",
    "origin_copy",
    "recovery_copy",
    "recovery_owners",
    "tenant",
]
