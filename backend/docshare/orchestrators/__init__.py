"""
Orchestrators package.

Orchestrators coordinate services, persistence and the worker pool to
implement a workflow end to end, and record a DecisionTrace for every run.

Difference between Services and Orchestrators:
    - Services: Single-responsibility, focused on one domain/entity
    - Orchestrators: Multi-service coordination, background workflows
"""

from docshare.orchestrators.base import (
    BaseOrchestrator,
    ExecutionStep,
    OrchestrationError,
    RunTrace,
)
from docshare.orchestrators.processing_scheduler import (
    ClaimedDocument,
    DispatchOutcome,
    DocumentScheduler,
    DocumentSchedulerError,
    ProcessingResult,
)
from docshare.orchestrators.synthesis_orchestrator import (
    OutcomeStatus,
    ProjectNotFoundError,
    SynthesisGenerationError,
    SynthesisNotFoundError,
    SynthesisOrchestrator,
    SynthesisOrchestratorError,
    SynthesisOutcome,
)

__all__ = [
    "BaseOrchestrator",
    "ExecutionStep",
    "OrchestrationError",
    "RunTrace",
    "ClaimedDocument",
    "DispatchOutcome",
    "DocumentScheduler",
    "DocumentSchedulerError",
    "ProcessingResult",
    "OutcomeStatus",
    "ProjectNotFoundError",
    "SynthesisGenerationError",
    "SynthesisNotFoundError",
    "SynthesisOrchestrator",
    "SynthesisOrchestratorError",
    "SynthesisOutcome",
]
