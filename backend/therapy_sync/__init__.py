from .actions import ConversationActions
from .composer import MAX_MESSAGE_LENGTH, MessageComposer
from .directory import ConversationDirectory
from .indicators import CHAT_BADGE, FLOATING_BADGE, FLOATING_ICON, BadgeIndicator, IndicatorBoard, format_badge_count
from .mentions import (
    DEFAULT_MENTION,
    DEFAULT_TAG_REASONS,
    MentionSession,
    describe_tag,
    detect_trigger,
    filter_items,
    parse_tag_reasons,
    scan_mentions,
    tag_alerts_for,
    tag_message_text,
    topic_items,
)
from .models import IndicatorState, MentionScan, MentionTrigger, SendOutcome
from .polling import PollingScheduler
from .settings import SyncSettings
from .store import ConversationStore
from .unread import UnreadReconciler
from .visibility import VisibilitySignal
from .workflow import DraftWorkflow, GenerationWorkflow, SummaryWorkflow, WorkflowError

__all__ = [
    "CHAT_BADGE",
    "DEFAULT_MENTION",
    "DEFAULT_TAG_REASONS",
    "FLOATING_BADGE",
    "FLOATING_ICON",
    "MAX_MESSAGE_LENGTH",
    "BadgeIndicator",
    "ConversationActions",
    "ConversationDirectory",
    "ConversationStore",
    "DraftWorkflow",
    "GenerationWorkflow",
    "IndicatorBoard",
    "IndicatorState",
    "MentionScan",
    "MentionSession",
    "MentionTrigger",
    "MessageComposer",
    "PollingScheduler",
    "SendOutcome",
    "SummaryWorkflow",
    "SyncSettings",
    "UnreadReconciler",
    "VisibilitySignal",
    "WorkflowError",
    "describe_tag",
    "detect_trigger",
    "filter_items",
    "format_badge_count",
    "parse_tag_reasons",
    "scan_mentions",
    "tag_alerts_for",
    "tag_message_text",
    "topic_items",
]
