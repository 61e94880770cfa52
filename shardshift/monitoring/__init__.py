"""Monitoring module for the ShardShift orchestrator."""

from shardshift.monitoring.metrics import Metrics

__all__ = ['Metrics']
