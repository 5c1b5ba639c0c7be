from omi_assistant.models.conversation import Conversation
from omi_assistant.models.memory import Memory
from omi_assistant.models.message import Message
from omi_assistant.models.omi_session import OmiSession
from omi_assistant.models.omi_user_link import OmiUserLink
from omi_assistant.models.preference import SessionPreference, UserPreference
from omi_assistant.models.transcript_segment import TranscriptSegment
from omi_assistant.models.user import User
from omi_assistant.models.user_context_window import UserContextWindow

__all__ = [
    "User",
    "OmiUserLink",
    "OmiSession",
    "UserPreference",
    "SessionPreference",
    "TranscriptSegment",
    "Conversation",
    "Message",
    "Memory",
    "UserContextWindow",
]
