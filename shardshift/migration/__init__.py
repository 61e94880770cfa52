"""Migration module for the ShardShift orchestrator."""

from shardshift.migration.classifier import EligibilityClassifier
from shardshift.migration.processor import RecoveryJob
from shardshift.migration.progress import ProgressReporter, RunCounters, format_progress
from shardshift.migration.scheduler import BoundedConcurrencyScheduler

__all__ = [
    'BoundedConcurrencyScheduler',
    'EligibilityClassifier',
    'ProgressReporter',
    'RecoveryJob',
    'RunCounters',
    'format_progress'
]
