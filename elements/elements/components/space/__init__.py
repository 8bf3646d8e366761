from .timeline_component import TimelineComponent
from .coherence_validator import CoherenceValidator
from .state_projector import StateProjectorComponent, StateReducer, MergePayloadReducer, AppendLogReducer
from .branch_manager import BranchManagerComponent
from .notification_hub import NotificationHubComponent

__all__ = [
    "TimelineComponent",
    "CoherenceValidator",
    "StateProjectorComponent",
    "StateReducer",
    "MergePayloadReducer",
    "AppendLogReducer",
    "BranchManagerComponent",
    "NotificationHubComponent",
]
