"""ShardShift: regional failover and repatriation orchestrator for sharded tenant databases."""

__version__ = "0.1.0"
