"""Conversational core of the ShelterOps service.

The orchestrator loads the session, routes the message, dispatches it to a
workflow endpoint, runs any proposed tool calls and falls back to a canned
reply when a mandatory stage fails. Each stage lives in its own module.
"""

from .fallback import FallbackEngine
from .orchestrator import ChatOrchestrator, OrchestratorResources, build_orchestrator
from .router import IntentRouter, heuristic_route
from .tools import ToolCallExecutor
from .workflows import TurnContext, WorkflowExecutor

__all__ = [
    "ChatOrchestrator",
    "FallbackEngine",
    "IntentRouter",
    "OrchestratorResources",
    "ToolCallExecutor",
    "TurnContext",
    "WorkflowExecutor",
    "build_orchestrator",
    "heuristic_route",
]
