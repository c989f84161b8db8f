"""Queue status reporting."""

from __future__ import annotations

from file_insight.queue.models import JobState, QueueStats
from file_insight.queue.repository import JobRepository


class StatsReporter:
    """Read-only per-state counts backed by the job store's counter rows."""

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def stats(self) -> QueueStats:
        return self.repository.stats()

    def reconcile(self) -> dict[JobState, tuple[int, int]]:
        """Repair counter drift from the job rows; returns ``{state: (stored, actual)}``."""

        return self.repository.reconcile_counts()


def render_stats_lines(stats: QueueStats) -> list[str]:
    lines = ["Analysis queue:"]
    width = max(len(state.value) for state in JobState)
    for name, value in stats.as_dict().items():
        lines.append(f"  {name:<{width}} {value:>8}")
    return lines
