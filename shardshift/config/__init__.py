"""Configuration for the ShardShift orchestrator."""

from shardshift.config.settings import Settings

__all__ = ['Settings']
