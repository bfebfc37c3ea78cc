"""
Calendar command agent: intent -> matching -> confirmation -> mutation
"""

from .intent_router import IntentClassifier
from .resolve_event_target import EventMatcher
from .conflict_manager import ConflictDetector
from .state import ConfirmationStateMachine
from .orchestrator import CommandOrchestrator

__all__ = [
    "IntentClassifier",
    "EventMatcher",
    "ConflictDetector",
    "ConfirmationStateMachine",
    "CommandOrchestrator",
]
