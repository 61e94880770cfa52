"""Recovery state machine for the ShardShift orchestrator."""

from shardshift.recovery.state_machine import RecoveryStateMachine, apply_action, result_state

__all__ = ['RecoveryStateMachine', 'apply_action', 'result_state']
