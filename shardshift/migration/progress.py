"""Progress reporting derived from run counters"""
from dataclasses import dataclass
import structlog

logger = structlog.get_logger()


@dataclass
class RunCounters:
    """Counters the scheduler maintains for one run. They only ever increase."""
    total: int = 0
    completed: int = 0
    errored: int = 0


def progress_percentage(completed: int, total: int) -> int:
    """Completion percentage, rounded to two decimal places of the ratio"""
    if total == 0:
        return 100
    return int(round(round(completed / total, 2) * 100))


def format_progress(completed: int, total: int) -> str:
    return f"{progress_percentage(completed, total)}% ({completed} of {total})"


def log_sink(label, percentage, completed, total):
    """Default reporter sink"""
    logger.info("progress", label=label, percentage=percentage, completed=completed, total=total)


class ProgressReporter:
    """
    Pushes progress to a sink after every state change.

    Holds no state of its own beyond the label; every report is recomputed
    from the counters handed in.
    """

    def __init__(self, label, sink=log_sink, metrics=None):
        self.label = label
        self.sink = sink
        self.metrics = metrics

    def report(self, counters: RunCounters) -> str:
        percentage = progress_percentage(counters.completed, counters.total)
        if self.metrics:
            self.metrics.progress_percentage.labels(label=self.label).set(percentage)
        try:
            self.sink(self.label, percentage, counters.completed, counters.total)
        except Exception as e:
            logger.error("progress.sink_failed", label=self.label, error=str(e))
        return format_progress(counters.completed, counters.total)
