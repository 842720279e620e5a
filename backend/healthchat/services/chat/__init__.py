from healthchat.services.chat.analysis import AnalysisJob, AnalysisTracker
from healthchat.services.chat.coordinator import (
    ConversationRequestCoordinator,
    Message,
    RequestEpoch,
    SendResult,
)
from healthchat.services.chat.errors import ChatFailure, classify_chat_failure
from healthchat.services.chat.store import ConversationStore
from healthchat.services.chat.throttle import RequestThrottle, ThrottleDecision, TokenCooldown

__all__ = [
    "AnalysisJob",
    "AnalysisTracker",
    "ChatFailure",
    "ConversationRequestCoordinator",
    "ConversationStore",
    "Message",
    "RequestEpoch",
    "RequestThrottle",
    "SendResult",
    "ThrottleDecision",
    "TokenCooldown",
    "classify_chat_failure",
]
