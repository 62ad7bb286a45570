"""Core modules for the Conductor orchestrator."""

from conductor.core.coordinator import (
    AlreadyRunningError,
    ExclusiveModeActiveError,
    MissingCredentialError,
    OrchestratorError,
    SessionCoordinator,
)
from conductor.core.models import (
    OrchestratorMode,
    SafetyLevel,
    Session,
    StartRequest,
    TerminalSpec,
    TerminalStatus,
)
from conductor.core.state import OrchestratorStore, StoreEvent, StoreEventType

__all__ = [
    "AlreadyRunningError",
    "ExclusiveModeActiveError",
    "MissingCredentialError",
    "OrchestratorError",
    "OrchestratorMode",
    "OrchestratorStore",
    "SafetyLevel",
    "Session",
    "SessionCoordinator",
    "StartRequest",
    "StoreEvent",
    "StoreEventType",
    "TerminalSpec",
    "TerminalStatus",
]
