"""Eligibility classification of tenant databases"""
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Set
import structlog

from shardshift.exceptions import ReplicationProbeError
from shardshift.interfaces import ResourceCatalog, TopologyProbe
from shardshift.models.models import (
    BatchMode,
    Direction,
    EligibleResource,
    RecoveryState,
    RegionRole,
    ReplicationRole,
    ReplicationState,
    ResourceFilter,
    ResourceKind,
    Tenant,
    TenantResource,
)

logger = structlog.get_logger()


@dataclass
class TenantPair:
    """A tenant with the origin-region and recovery-region copies of its database"""
    tenant: Tenant
    origin: Optional[TenantResource]
    recovery: Optional[TenantResource]

    @property
    def key(self) -> str:
        return self.tenant.key


@dataclass
class BatchDecision:
    mode: BatchMode
    diverged: Set[str] = field(default_factory=set)


@dataclass
class ClassificationResult:
    """Outcome of one classification cycle"""
    eligible: Deque[EligibleResource] = field(default_factory=deque)
    converged: List[EligibleResource] = field(default_factory=list)
    deferred: List[TenantPair] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.eligible) + len(self.converged) + len(self.deferred)


class EligibilityClassifier:
    """
    Partitions tenant databases into already converged, eligible for
    migration, and deferred until a later cycle.

    The replication topology is the source of truth: a copy that already
    holds the primary role for the direction is converged whatever the
    catalog recorded, and a copy still catching up waits for the next cycle.
    """

    def __init__(self, catalog: ResourceCatalog, probe: TopologyProbe, direction: Direction,
                 settings, metrics=None):
        self.catalog = catalog
        self.probe = probe
        self.direction = direction
        self.settings = settings
        self.metrics = metrics

    def _count(self, outcome: str, amount: int = 1):
        if self.metrics and amount:
            self.metrics.resources_classified.labels(
                direction=self.direction.value, outcome=outcome
            ).inc(amount)

    def pairs(self, tenants: Optional[Iterable[Tenant]] = None) -> List[TenantPair]:
        """
        Pair each tenant with its database copies and keep those in scope.

        A tenant with no recovery-region copy is out of scope in both
        directions: there is nothing to fail over to or bring back.
        Repatriation also skips copies that were never touched by recovery.
        """
        tenants = list(tenants) if tenants is not None else self.catalog.list_tenants()
        copies: Dict[str, Dict[RegionRole, TenantResource]] = {}
        for resource in self.catalog.list_resources(ResourceFilter(kind=ResourceKind.DATABASE)):
            if resource.tenant_key:
                copies.setdefault(resource.tenant_key, {})[resource.region_role] = resource

        pairs = []
        for tenant in tenants:
            tenant_copies = copies.get(tenant.key, {})
            pair = TenantPair(
                tenant=tenant,
                origin=tenant_copies.get(RegionRole.ORIGIN),
                recovery=tenant_copies.get(RegionRole.RECOVERY)
            )
            if pair.recovery is None:
                if self.direction == Direction.FORWARD:
                    logger.warning("classifier.no_recovery_copy", tenant=tenant.key)
                continue
            if self.direction == Direction.REVERSE and pair.recovery.recovery_state == RecoveryState.NONE:
                continue
            pairs.append(pair)
        return pairs

    def decide_batch_mode(self, pairs: Iterable[TenantPair]) -> BatchDecision:
        """
        Make the run-wide replicate-or-reset decision.

        Every tenant is checked so the caller also learns which individual
        tenants diverged. A failed check counts as diverged, which keeps the
        run on the migrate path.
        """
        if self.direction == Direction.FORWARD:
            return BatchDecision(mode=BatchMode.MIGRATE)

        diverged = set()
        for pair in pairs:
            if pair.recovery.recovery_state == RecoveryState.COMPLETE:
                continue
            try:
                changed = self.probe.has_data_changed(pair.recovery.location)
            except ReplicationProbeError as e:
                logger.warning("classifier.divergence_check_failed", tenant=pair.key, error=str(e))
                changed = True
            if changed:
                diverged.add(pair.key)

        mode = BatchMode.MIGRATE if diverged else BatchMode.RESET
        logger.info("classifier.batch_mode", mode=mode.value, diverged=len(diverged))
        return BatchDecision(mode=mode, diverged=diverged)

    def _entry(self, pair: TenantPair, link_id=None) -> EligibleResource:
        if self.direction == Direction.FORWARD:
            target = pair.recovery.location
        elif pair.origin is not None:
            target = pair.origin.location
        else:
            target = pair.tenant.origin_shard
        return EligibleResource(
            tenant_key=pair.key,
            tier=pair.tenant.tier,
            tracked=pair.recovery,
            target=target,
            link_id=link_id
        )

    def _partner_region(self, pair: TenantPair) -> str:
        if self.direction == Direction.FORWARD:
            if pair.recovery.partner_region:
                return pair.recovery.partner_region
            return pair.origin.region if pair.origin else self.settings.ORIGIN_REGION
        return pair.origin.partner_region or pair.recovery.region

    def classify(self, pairs: Iterable[TenantPair]) -> ClassificationResult:
        """
        Classify tenant pairs for this cycle.

        Returns:
            ClassificationResult: eligible entries ordered by tier then
                insertion order, converged entries and deferred pairs
        """
        result = ClassificationResult()
        eligible = []

        for pair in pairs:
            if self.direction == Direction.REVERSE:
                if pair.recovery.recovery_state == RecoveryState.COMPLETE:
                    result.converged.append(self._entry(pair))
                    continue
                if pair.origin is None:
                    # Nothing to probe yet; the primitive seeds the origin copy
                    eligible.append(self._entry(pair))
                    continue

            target = self._entry(pair).target
            try:
                link = self.probe.get_replication_link(
                    target.server, target.database, self._partner_region(pair)
                )
            except ReplicationProbeError as e:
                logger.warning("classifier.probe_failed", tenant=pair.key, error=str(e))
                result.deferred.append(pair)
                continue

            if link.role == ReplicationRole.PRIMARY:
                result.converged.append(self._entry(pair, link.link_id))
            elif link.state != ReplicationState.CATCH_UP:
                logger.info("classifier.not_caught_up", tenant=pair.key, state=link.state.value)
                result.deferred.append(pair)
            else:
                eligible.append(self._entry(pair, link.link_id))

        # sorted() is stable, so equal tiers keep insertion order
        result.eligible = deque(sorted(eligible, key=lambda entry: entry.tier))

        self._count("eligible", len(result.eligible))
        self._count("converged", len(result.converged))
        self._count("deferred", len(result.deferred))
        logger.info("classifier.classified",
                    direction=self.direction.value,
                    eligible=len(result.eligible),
                    converged=len(result.converged),
                    deferred=len(result.deferred))
        return result
