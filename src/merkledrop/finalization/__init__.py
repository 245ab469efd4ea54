"""Scheduled and manual finalization of expired distributions."""

from merkledrop.finalization.scheduler import (
    AttemptOutcome,
    FinalizationScheduler,
    RunSummary,
)

__all__ = ["AttemptOutcome", "FinalizationScheduler", "RunSummary"]
