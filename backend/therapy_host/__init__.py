from .assistant import AssistantReplies
from .database import SQLiteThreadDB
from .safety_guard import HostPolicyError, SafetyDecision, SafetyGuard
from .service import DEFAULT_GROUP, HostService
from .thread_store import ThreadStore

__all__ = [
    "DEFAULT_GROUP",
    "AssistantReplies",
    "HostPolicyError",
    "HostService",
    "SQLiteThreadDB",
    "SafetyDecision",
    "SafetyGuard",
    "ThreadStore",
]
