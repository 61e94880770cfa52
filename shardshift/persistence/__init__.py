"""Resource catalog implementations for the ShardShift orchestrator."""

from shardshift.persistence.catalog import ValkeyResourceCatalog
from shardshift.persistence.memory import InMemoryResourceCatalog
from shardshift.persistence.resilient_valkey import ResilientValkeyClient

__all__ = ['InMemoryResourceCatalog', 'ResilientValkeyClient', 'ValkeyResourceCatalog']
