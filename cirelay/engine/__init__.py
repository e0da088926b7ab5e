from cirelay.engine.dispatcher import ActionDispatcher
from cirelay.engine.orchestrator import BuildOrchestrator, RunOutcome
from cirelay.engine.stages import StageTransitions, format_stage_label

__all__ = [
    "ActionDispatcher",
    "BuildOrchestrator",
    "RunOutcome",
    "StageTransitions",
    "format_stage_label",
]
