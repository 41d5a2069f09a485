"""Execution engine: feature scheduling and the Plan-Act-Verify machine."""

from .phases import ALLOWED_TRANSITIONS, IllegalTransitionError, Phase, PhaseMachine, PhaseOutcome
from .scheduler import FeatureScheduler, SchedulerState
from .verification import VerificationResult, VerificationRunner

__all__ = [
    "ALLOWED_TRANSITIONS",
    "FeatureScheduler",
    "IllegalTransitionError",
    "Phase",
    "PhaseMachine",
    "PhaseOutcome",
    "SchedulerState",
    "VerificationResult",
    "VerificationRunner",
]
