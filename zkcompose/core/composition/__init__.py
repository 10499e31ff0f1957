"""
Composition Module.

Orchestrates the inner (local) and outer (remote) proofs of a job and
validates their binding before submission.
"""

from zkcompose.core.composition.job import (
    Failure,
    FailureReason,
    JobState,
    OrchestrationJob,
)
from zkcompose.core.composition.manager import CompositionManager, validate_composition

__all__ = [
    "Failure",
    "FailureReason",
    "JobState",
    "OrchestrationJob",
    "CompositionManager",
    "validate_composition",
]
