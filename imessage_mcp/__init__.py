"""
iMessage MCP - a bridge between an assistant and the macOS Messages app
"""

from .attributed_body import extract_text_from_attributed_body
from .contacts import (
    Contact,
    ContactIndex,
    ContactResolver,
    build_contact_index,
    discover_addressbook_paths,
    normalize_email,
    normalize_handle,
    normalize_phone_number,
)
from .messages import (
    MessageRecord,
    MessagesDBError,
    format_message_line,
    get_conversation,
    get_recent_messages,
    resolve_text,
    search_messages,
)
from .sender import MessageSender, SendResult

__all__ = [
    "extract_text_from_attributed_body",
    "normalize_phone_number",
    "normalize_email",
    "normalize_handle",
    "Contact",
    "ContactIndex",
    "ContactResolver",
    "build_contact_index",
    "discover_addressbook_paths",
    "MessageRecord",
    "MessagesDBError",
    "resolve_text",
    "format_message_line",
    "get_recent_messages",
    "search_messages",
    "get_conversation",
    "MessageSender",
    "SendResult",
]

__version__ = "1.1.0"
