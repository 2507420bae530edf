"""
Core functionality for reading the macOS Messages database
"""
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from .attachments import Attachment
from .attributed_body import extract_text_from_attributed_body
from .contacts import ContactResolver, normalize_handle

logger = logging.getLogger(__name__)

# Seconds between the Unix epoch and Apple's 2001-01-01 epoch
APPLE_EPOCH_OFFSET = 978307200

FULL_DISK_ACCESS_HINT = (
    "Please grant Full Disk Access permission to your terminal application in "
    "System Settings > Privacy & Security > Full Disk Access. "
    "PLEASE TELL THE USER TO GRANT FULL DISK ACCESS TO THE TERMINAL APPLICATION"
    "(CURSOR, TERMINAL, CLAUDE, ETC.) AND RESTART THE APPLICATION."
)


class MessagesDBError(RuntimeError):
    """The Messages database cannot be opened or queried."""


def get_messages_db_path() -> str:
    """Get the path to the Messages database."""
    return os.environ.get(
        'IMESSAGE_DB_PATH',
        os.path.expanduser("~/Library/Messages/chat.db"),
    )


def connect_messages_db(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Open chat.db read-only, raising MessagesDBError with a permission hint on failure."""
    path = db_path or get_messages_db_path()
    if not os.path.exists(path):
        raise MessagesDBError(f"Messages database not found at {path}. {FULL_DISK_ACCESS_HINT}")
    try:
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True, timeout=5.0)
    except sqlite3.Error as e:
        raise MessagesDBError(f"Failed to open Messages database: {e}. {FULL_DISK_ACCESS_HINT}") from e
    try:
        conn.execute("SELECT 1 FROM message LIMIT 1")
    except sqlite3.Error as e:
        conn.close()
        raise MessagesDBError(f"Failed to open Messages database: {e}. {FULL_DISK_ACCESS_HINT}") from e
    conn.row_factory = sqlite3.Row
    return conn


def apple_time_to_datetime(apple_time: Optional[int]) -> Optional[datetime]:
    """
    Convert a chat.db timestamp to a local datetime.

    Modern stores use nanoseconds since 2001-01-01, older ones seconds.
    """
    if apple_time is None:
        return None
    try:
        apple_time = int(apple_time)
        seconds = apple_time / 1_000_000_000 if len(str(abs(apple_time))) > 10 else apple_time
        return datetime.fromtimestamp(seconds + APPLE_EPOCH_OFFSET)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        logger.debug(f"Date conversion error: {e} for timestamp {apple_time}")
        return None


def apple_time_hours_ago(hours: float) -> int:
    """Apple-epoch nanosecond timestamp for ``hours`` before now."""
    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    apple_epoch = datetime(2001, 1, 1, tzinfo=timezone.utc)
    return int((since - apple_epoch).total_seconds() * 1_000_000_000)


@dataclass
class MessageRecord:
    """One row of the message table with the joined handle and chat name."""
    row_id: int
    text: Optional[str] = None
    attributed_body: Optional[bytes] = None
    is_from_me: bool = False
    has_attachments: bool = False
    date: Optional[datetime] = None
    handle: Optional[str] = None
    chat_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MessageRecord":
        keys = row.keys()
        return cls(
            row_id=row["rowid"],
            text=row["text"],
            attributed_body=row["attributedBody"],
            is_from_me=bool(row["is_from_me"]),
            has_attachments=bool(row["cache_has_attachments"]),
            date=apple_time_to_datetime(row["date"]),
            handle=row["handle"],
            chat_name=row["chat_name"] if "chat_name" in keys else None,
        )


@dataclass
class ChatSummary:
    chat_id: int
    chat_identifier: Optional[str]
    display_name: Optional[str]
    handle: Optional[str]
    last_message_date: Optional[datetime]
    message_count: int

    @property
    def label(self) -> str:
        return self.display_name or self.handle or self.chat_identifier or "Unknown"


def resolve_text(record: MessageRecord) -> Optional[str]:
    """
    Message text from the text column, falling back to the attributedBody blob.
    """
    if record.text:
        return record.text
    if record.attributed_body:
        return extract_text_from_attributed_body(record.attributed_body)
    return None


def format_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "Unknown date"


def format_message_line(
    record: MessageRecord,
    resolver: ContactResolver,
    include_id: bool = False,
    attachments: Optional[List[Attachment]] = None,
    fallback_sender: Optional[str] = None,
) -> Optional[str]:
    """
    Render a message as a single display line.

    Returns None when the message has neither text nor attachments to show.
    """
    text = resolve_text(record) or ""

    if attachments:
        attachment_info = " " + " ".join(a.label() for a in attachments)
    elif record.has_attachments:
        attachment_info = " 📎"
    else:
        attachment_info = ""

    if not text.strip() and not attachment_info:
        return None

    if record.is_from_me:
        sender = "You"
    elif record.handle:
        sender = resolver.resolve_handle_to_name(record.handle)
    else:
        sender = fallback_sender or "Unknown"

    prefix = f"[{format_date(record.date)}] {sender}"
    if record.chat_name:
        prefix += f" ({record.chat_name})"
    if include_id:
        prefix += f" (ID: {record.row_id})"
    return f"{prefix}: {text}{attachment_info}"


def looks_like_handle(value: str) -> bool:
    """True for strings that are an email or a phone number rather than a name."""
    if '@' in value:
        return True
    return any(c.isdigit() for c in value) and all(c.isdigit() or c in '+-() .' for c in value)


def _placeholders(values: Iterable[Any]) -> str:
    return ', '.join('?' for _ in values)


def _like_pattern(value: str) -> str:
    """Substring LIKE pattern matching ``value`` literally (use with ESCAPE '\\')."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def find_handle_rowids(conn: sqlite3.Connection, handle_ids: Set[str]) -> List[int]:
    """ROWIDs of the handle rows whose normalized id is in ``handle_ids``."""
    if not handle_ids:
        return []
    rowids = []
    for row in conn.execute("SELECT ROWID, id FROM handle"):
        if normalize_handle(row["id"]) in handle_ids:
            rowids.append(row["ROWID"])
    return rowids


_MESSAGE_COLUMNS = """
    m.ROWID as rowid,
    m.text,
    m.attributedBody,
    m.is_from_me,
    m.cache_has_attachments,
    m.date,
    h.id as handle
"""


def get_recent_messages(resolver: ContactResolver, limit: int = 50, include_group_chats: bool = True) -> str:
    """
    Get the most recent messages across all conversations.

    Args:
        resolver: Contact resolver used for sender names
        limit: Number of messages to return
        include_group_chats: Whether to include messages from group chats

    Returns:
        Formatted string with one message per paragraph
    """
    group_filter = "" if include_group_chats else "AND (c.chat_identifier IS NULL OR c.chat_identifier NOT LIKE 'chat%')"
    query = f"""
    SELECT
        {_MESSAGE_COLUMNS},
        c.display_name as chat_name
    FROM message m
    LEFT JOIN handle h ON m.handle_id = h.ROWID
    LEFT JOIN chat_message_join cmj ON m.ROWID = cmj.message_id
    LEFT JOIN chat c ON cmj.chat_id = c.ROWID
    WHERE (m.text IS NOT NULL OR m.attributedBody IS NOT NULL)
    {group_filter}
    ORDER BY m.date DESC
    LIMIT ?
    """
    conn = connect_messages_db()
    try:
        rows = conn.execute(query, (limit,)).fetchall()
    finally:
        conn.close()

    lines = [format_message_line(MessageRecord.from_row(row), resolver) for row in rows]
    formatted = "\n\n".join(line for line in lines if line)
    return formatted or "No recent messages found."


def search_messages(resolver: ContactResolver, query: str, limit: int = 25) -> str:
    """
    Search messages by text, handle, chat name, or contact name.

    The raw attributedBody is searched as text as well, which catches the
    messages whose text column is empty. Wildcards in the query match
    literally, and contact names must match a name token exactly.
    """
    pattern = _like_pattern(query)
    conn = connect_messages_db()
    try:
        handle_rowids = []
        if not looks_like_handle(query):
            handle_rowids = find_handle_rowids(conn, resolver.resolve_name_to_handles(query, exact_only=True))
        handle_filter = f"OR m.handle_id IN ({_placeholders(handle_rowids)})" if handle_rowids else ""

        sql = f"""
        SELECT
            {_MESSAGE_COLUMNS},
            c.display_name as chat_name
        FROM message m
        LEFT JOIN handle h ON m.handle_id = h.ROWID
        LEFT JOIN chat_message_join cmj ON m.ROWID = cmj.message_id
        LEFT JOIN chat c ON cmj.chat_id = c.ROWID
        WHERE (
            m.text LIKE ? ESCAPE '\\'
            OR CAST(m.attributedBody AS TEXT) LIKE ? ESCAPE '\\'
            OR h.id LIKE ? ESCAPE '\\'
            OR c.display_name LIKE ? ESCAPE '\\'
            {handle_filter}
        )
        AND (m.text IS NOT NULL OR m.attributedBody IS NOT NULL)
        ORDER BY m.date DESC
        LIMIT ?
        """
        params = (pattern, pattern, pattern, pattern, *handle_rowids, limit)
        rows = conn.execute(sql, params).fetchall()
    finally:
        conn.close()

    lines = [format_message_line(MessageRecord.from_row(row), resolver) for row in rows]
    formatted = "\n\n".join(line for line in lines if line)
    return formatted or f'No messages found matching "{query}".'


def get_message_attachments(conn: sqlite3.Connection, message_ids: List[int]) -> Dict[int, List[Attachment]]:
    """Attachments of the given messages, keyed by message ROWID."""
    if not message_ids:
        return {}
    query = f"""
    SELECT
        maj.message_id,
        a.ROWID as attachment_id,
        a.filename,
        a.mime_type,
        a.transfer_name,
        a.total_bytes
    FROM message_attachment_join maj
    JOIN attachment a ON maj.attachment_id = a.ROWID
    WHERE maj.message_id IN ({_placeholders(message_ids)})
    ORDER BY a.ROWID
    """
    attachments: Dict[int, List[Attachment]] = {}
    for row in conn.execute(query, tuple(message_ids)):
        attachments.setdefault(row["message_id"], []).append(Attachment(
            attachment_id=row["attachment_id"],
            message_id=row["message_id"],
            filename=row["filename"],
            mime_type=row["mime_type"],
            transfer_name=row["transfer_name"],
            total_bytes=row["total_bytes"],
        ))
    return attachments


def get_attachments_for_message(message_id: int) -> List[Attachment]:
    """All attachments of one message."""
    conn = connect_messages_db()
    try:
        return get_message_attachments(conn, [message_id]).get(message_id, [])
    finally:
        conn.close()


def _find_conversation_chats(conn: sqlite3.Connection, contact: str, handle_ids: Set[str]) -> List[int]:
    handle_rowids = find_handle_rowids(conn, handle_ids)
    if handle_rowids:
        rows = conn.execute(f"""
            SELECT DISTINCT chj.chat_id
            FROM chat_handle_join chj
            WHERE chj.handle_id IN ({_placeholders(handle_rowids)})
            ORDER BY chj.chat_id DESC
        """, tuple(handle_rowids)).fetchall()
        if rows:
            return [row["chat_id"] for row in rows]

    # Nothing resolved; fall back to matching the raw handle text
    rows = conn.execute("""
        SELECT DISTINCT chj.chat_id
        FROM chat_handle_join chj
        JOIN handle h ON chj.handle_id = h.ROWID
        WHERE h.id LIKE ? ESCAPE '\\'
        ORDER BY chj.chat_id DESC
    """, (_like_pattern(contact),)).fetchall()
    return [row["chat_id"] for row in rows]


def get_conversation(
    resolver: ContactResolver,
    contact: str,
    limit: int = 100,
    hours_ago: Optional[float] = None,
) -> str:
    """
    Get the conversation with a contact, oldest message first.

    Args:
        resolver: Contact resolver for name lookups and sender names
        contact: Contact name, phone number, or email
        limit: Maximum number of messages
        hours_ago: Only include messages from the last N hours (optional)

    Returns:
        Formatted conversation with message IDs and attachment labels
    """
    contact = str(contact).strip()
    if looks_like_handle(contact):
        handle_ids = {h for h in [normalize_handle(contact)] if h}
    else:
        handle_ids = resolver.resolve_name_to_handles(contact)
        logger.info(f"Resolved '{contact}' to {len(handle_ids)} handles")

    time_info = f" (last {hours_ago:g} hours)" if hours_ago else ""

    conn = connect_messages_db()
    try:
        chat_ids = _find_conversation_chats(conn, contact, handle_ids)
        if not chat_ids:
            return f'No conversation found with "{contact}".'

        params: List[Any] = list(chat_ids)
        date_filter = ""
        if hours_ago:
            date_filter = "AND m.date > ?"
            params.append(apple_time_hours_ago(hours_ago))
        params.append(limit)

        rows = conn.execute(f"""
            SELECT
                {_MESSAGE_COLUMNS}
            FROM message m
            LEFT JOIN handle h ON m.handle_id = h.ROWID
            JOIN chat_message_join cmj ON m.ROWID = cmj.message_id
            WHERE cmj.chat_id IN ({_placeholders(chat_ids)})
            AND (m.text IS NOT NULL OR m.attributedBody IS NOT NULL)
            {date_filter}
            ORDER BY m.date DESC
            LIMIT ?
        """, tuple(params)).fetchall()

        records = [MessageRecord.from_row(row) for row in reversed(rows)]
        attachments = get_message_attachments(conn, [r.row_id for r in records if r.has_attachments])
    finally:
        conn.close()

    lines = [
        format_message_line(
            record,
            resolver,
            include_id=True,
            attachments=attachments.get(record.row_id),
            fallback_sender=contact,
        )
        for record in records
    ]
    formatted = "\n\n".join(line for line in lines if line)
    return formatted or f'No messages found with "{contact}"{time_info}.'


def get_recent_chats(limit: int = 20, hours_ago: Optional[float] = None) -> List[ChatSummary]:
    """Chats ordered by most recent activity."""
    params: List[Any] = []
    date_filter = ""
    if hours_ago:
        date_filter = "WHERE m.date > ?"
        params.append(apple_time_hours_ago(hours_ago))
    params.append(limit)

    query = f"""
    SELECT
        c.ROWID as chat_id,
        c.chat_identifier,
        c.display_name,
        MAX(m.date) as last_date,
        COUNT(DISTINCT m.ROWID) as message_count,
        MIN(h.id) as handle
    FROM chat c
    JOIN chat_message_join cmj ON c.ROWID = cmj.chat_id
    JOIN message m ON cmj.message_id = m.ROWID
    LEFT JOIN chat_handle_join chj ON c.ROWID = chj.chat_id
    LEFT JOIN handle h ON chj.handle_id = h.ROWID
    {date_filter}
    GROUP BY c.ROWID
    ORDER BY MAX(m.date) DESC
    LIMIT ?
    """
    conn = connect_messages_db()
    try:
        rows = conn.execute(query, tuple(params)).fetchall()
    finally:
        conn.close()

    return [
        ChatSummary(
            chat_id=row["chat_id"],
            chat_identifier=row["chat_identifier"],
            display_name=row["display_name"],
            handle=row["handle"],
            last_message_date=apple_time_to_datetime(row["last_date"]),
            message_count=row["message_count"],
        )
        for row in rows
    ]


def list_recent_chats(resolver: ContactResolver, limit: int = 20, hours_ago: Optional[float] = None) -> str:
    """Formatted list of recently active chats."""
    chats = get_recent_chats(limit=limit, hours_ago=hours_ago)
    time_info = f" (last {hours_ago:g} hours)" if hours_ago else ""
    if not chats:
        return f"No recent conversations found{time_info}."

    formatted = []
    for i, chat in enumerate(chats, 1):
        label = chat.display_name or (resolver.resolve_handle_to_name(chat.handle) if chat.handle else chat.label)
        formatted.append(
            f"{i}. {label}\n"
            f"   Last message: {format_date(chat.last_message_date)}\n"
            f"   Messages: {chat.message_count}"
        )
    return f"Recent Conversations{time_info}:\n\n" + "\n\n".join(formatted)


def check_messages_db_access() -> str:
    """Check if the Messages database is accessible and return detailed information."""
    db_path = get_messages_db_path()
    status = []
    try:
        conn = connect_messages_db(db_path)
    except MessagesDBError as e:
        return f"ERROR: {e}"
    status.append(f"Successfully connected to database at {db_path}")
    try:
        tables = [
            row[0] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name IN ('message', 'handle', 'chat')"
            )
        ]
        if {'message', 'handle', 'chat'} <= set(tables):
            status.append("Required tables (message, handle, chat) are present")
        else:
            status.append(f"WARNING: Some required tables are missing. Found: {', '.join(tables)}")
        count = conn.execute("SELECT COUNT(*) FROM message").fetchone()[0]
        status.append(f"Database contains {count} messages")
    finally:
        conn.close()
    return "\n".join(status)
