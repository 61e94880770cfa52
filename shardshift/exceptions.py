"""
Exceptions raised by the ShardShift orchestrator.

Per-resource errors (probe failures, operation faults, rejected transitions)
are caught and isolated by the component that hits them. Only the global
precondition errors are allowed to abort a run.
"""


class ShardShiftError(Exception):
    """Base class for orchestrator errors."""
    pass


class InvalidTransitionError(ShardShiftError):
    """Raised when an action is not allowed from a resource's current state."""

    def __init__(self, current_state, action):
        self.current_state = current_state
        self.action = action
        super().__init__(f"Action {action.value} not allowed from state {current_state.value}")


class ResourceNotFoundError(ShardShiftError):
    """Raised when a catalog lookup finds no record."""
    pass


class CatalogWriteError(ShardShiftError):
    """Raised when the catalog rejects or fails a write."""
    pass


class ReplicationProbeError(ShardShiftError):
    """Raised when the replication topology cannot be queried."""
    pass


class OperationSubmitError(ShardShiftError):
    """Raised when the migration primitive refuses to start an operation."""
    pass


class RunAbortedError(ShardShiftError):
    """Base class for global precondition failures that abort a run."""
    pass


class CatalogUnavailableError(RunAbortedError):
    """Raised when the catalog cannot be reached at startup."""
    pass


class RunLockedError(RunAbortedError):
    """Raised when another run already holds the lock for a direction."""
    pass


class SchedulerBusyError(ShardShiftError):
    """Raised when a scheduler is re-entered while a run is in progress."""
    pass
