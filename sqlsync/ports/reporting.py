"""Cycle reporting protocol.

Defines the callback interface through which the scheduler publishes cycle
summaries, without the engine depending on any particular UI or sink.
"""

from typing import Protocol

from sqlsync.domain.entities import CycleSummary


class CycleReporter(Protocol):
    """Protocol for receiving cycle summaries."""

    def on_cycle_complete(self, summary: CycleSummary) -> None:
        """Called after every cycle, including skipped and failed ones.

        Args:
            summary: Counts, duration and outcome of the cycle.
        """
        ...
