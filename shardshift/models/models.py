""" Models for the ShardShift recovery orchestrator """
from enum import Enum
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field


class ResourceKind(str, Enum):
    """Kinds of tenant resources tracked in the catalog"""
    SERVER = "server"
    POOL = "pool"
    DATABASE = "database"


class RegionRole(str, Enum):
    """Role a region plays for a resource, set at provisioning time"""
    ORIGIN = "origin"
    RECOVERY = "recovery"


class RecoveryState(str, Enum):
    """Recovery state recorded for servers, pools and databases"""
    NONE = "none"
    RECOVERING = "recovering"
    RESETTING = "resetting"
    START_FAILOVER = "startFailover"
    FAILED_OVER = "failedOver"
    REPLICATED = "replicated"
    START_FAILBACK = "startFailback"
    COMPLETE = "complete"
    ERRORED = "errored"


class RecoveryAction(str, Enum):
    """Actions accepted by the recovery state machine"""
    START_RECOVERY = "startRecovery"
    START_RESET = "startReset"
    END_RESET = "endReset"
    START_FAILOVER = "startFailover"
    END_FAILOVER = "endFailover"
    MARK_REPLICATED = "markReplicated"
    START_FAILBACK = "startFailback"
    CONCLUDE = "conclude"
    MARK_ERROR = "markError"


class OnlineState(str, Enum):
    """Whether a tenant is accepting traffic"""
    ONLINE = "online"
    OFFLINE = "offline"


class ReplicationRole(str, Enum):
    """Replication role of a database copy"""
    PRIMARY = "primary"
    SECONDARY = "secondary"


class ReplicationState(str, Enum):
    """Catch-up status of a replication link"""
    CATCH_UP = "catchup"
    SEEDING = "seeding"
    PENDING = "pending"


class OperationStatus(str, Enum):
    """Status of an asynchronous migration operation"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAULTED = "faulted"

    @property
    def is_terminal(self) -> bool:
        return self != OperationStatus.PENDING


class BatchMode(str, Enum):
    """Run-wide job selection for repatriation"""
    MIGRATE = "migrate"
    RESET = "reset"


class Direction(str, Enum):
    """
    Migration direction.

    FORWARD fails tenants over to the recovery region, REVERSE repatriates them
    back to the origin region. The direction selects the state machine actions
    the scheduler applies and which copy of a tenant database gets promoted.
    """
    FORWARD = "failover"
    REVERSE = "repatriate"

    @property
    def start_action(self) -> RecoveryAction:
        if self == Direction.FORWARD:
            return RecoveryAction.START_FAILOVER
        return RecoveryAction.START_FAILBACK

    @property
    def conclude_action(self) -> RecoveryAction:
        if self == Direction.FORWARD:
            return RecoveryAction.END_FAILOVER
        return RecoveryAction.CONCLUDE

    @property
    def start_state(self) -> RecoveryState:
        return RecoveryState(self.start_action.value)

    @property
    def target_role(self) -> RegionRole:
        """Region role of the copy that becomes primary"""
        if self == Direction.FORWARD:
            return RegionRole.RECOVERY
        return RegionRole.ORIGIN


class ResourceKey(BaseModel, frozen=True):
    """Catalog identity of a resource: region-qualified name plus kind"""
    name: str
    kind: ResourceKind

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.name}"


class ShardLocation(BaseModel, frozen=True):
    """A server and database pair a tenant can be pointed at"""
    server: str
    database: str

    def __str__(self) -> str:
        return f"{self.server}/{self.database}"


class TenantResource(BaseModel):
    """A server, pool or database recorded in the resource catalog"""
    name: str
    kind: ResourceKind
    region: str
    region_role: RegionRole
    partner_region: Optional[str] = None
    recovery_state: RecoveryState = RecoveryState.NONE
    server: Optional[str] = None
    database: Optional[str] = None
    pool: Optional[str] = None
    tenant_key: Optional[str] = None

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(name=self.name, kind=self.kind)

    @property
    def location(self) -> Optional[ShardLocation]:
        if self.kind != ResourceKind.DATABASE or not self.server or not self.database:
            return None
        return ShardLocation(server=self.server, database=self.database)

    @property
    def owner_keys(self) -> List[ResourceKey]:
        """Keys of the pool and server that own this database"""
        owners = []
        if self.kind == ResourceKind.DATABASE and self.server:
            if self.pool:
                owners.append(ResourceKey(name=f"{self.server}/{self.pool}", kind=ResourceKind.POOL))
            owners.append(ResourceKey(name=self.server, kind=ResourceKind.SERVER))
        return owners


class Tenant(BaseModel):
    """A customer identity bound to exactly one active shard"""
    key: str
    name: str
    tier: int = 0
    active_shard: ShardLocation
    origin_shard: ShardLocation
    online_state: OnlineState = OnlineState.ONLINE
    recovery_state: RecoveryState = RecoveryState.NONE


class ResourceFilter(BaseModel):
    """Filter accepted by catalog listing; unset fields match everything"""
    kind: Optional[ResourceKind] = None
    region_role: Optional[RegionRole] = None
    recovery_state: Optional[RecoveryState] = None
    tenant_key: Optional[str] = None

    def matches(self, resource: TenantResource) -> bool:
        if self.kind is not None and resource.kind != self.kind:
            return False
        if self.region_role is not None and resource.region_role != self.region_role:
            return False
        if self.recovery_state is not None and resource.recovery_state != self.recovery_state:
            return False
        if self.tenant_key is not None and resource.tenant_key != self.tenant_key:
            return False
        return True


class ReplicationLink(BaseModel):
    """Probe result for one database against a partner region"""
    role: ReplicationRole
    state: ReplicationState
    link_id: Optional[str] = None
    partner_region: Optional[str] = None


class EligibleResource(BaseModel):
    """A tenant database waiting in the eligibility queue"""
    tenant_key: str
    tier: int = 0
    tracked: TenantResource  # recovery-region copy carrying the recovery state
    target: ShardLocation    # copy that is promoted to primary
    link_id: Optional[str] = None


class MigrationOperation(BaseModel):
    """Bookkeeping for one in-flight asynchronous operation"""
    operation_id: str
    entry: EligibleResource
    submitted_at: datetime = Field(default_factory=datetime.now)
    terminal_status: OperationStatus = OperationStatus.PENDING
    error_message: Optional[str] = None


class RunSummary(BaseModel):
    """Outcome of one orchestrator run"""
    direction: Direction
    batch_mode: BatchMode
    total: int = 0
    completed: int = 0
    errored: int = 0
    converged: List[str] = []
    reset: List[str] = []
    succeeded: List[str] = []
    faulted: List[str] = []
    skipped: List[str] = []
    deferred: List[str] = []
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
