"""
Pytest fixtures for the iMessage MCP tests.

Builds temporary SQLite databases with the same schema as macOS chat.db and
the AddressBook source databases, populated with realistic rows.
"""
import sqlite3
import time
from pathlib import Path
from typing import Dict, List

import pytest

from imessage_mcp.contacts import ContactResolver

APPLE_EPOCH_OFFSET = 978307200

# Base timestamp: 2024-01-15 10:00:00 UTC
BASE_TS = 1705312800.0

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def imessage_timestamp(unix_ts: float) -> int:
    """Convert Unix timestamp to iMessage timestamp (nanoseconds since 2001-01-01)."""
    return int((unix_ts - APPLE_EPOCH_OFFSET) * 1_000_000_000)


def encode_length(n: int) -> bytes:
    if n < 0x81:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\x81" + n.to_bytes(2, "big")
    return b"\x82" + n.to_bytes(4, "big")


def make_attributed_body(text: str) -> bytes:
    """Build a blob shaped like the typedstream stored in message.attributedBody."""
    payload = text.encode("utf-8")
    return (
        b"\x04\x0bstreamtyped\x81\xe8\x03\x84\x01@\x84\x84\x84\x12NSAttributedString\x00"
        b"\x84\x84\x08NSObject\x00\x85\x92\x84\x84\x84\x08NSString\x01\x94\x84\x01+"
        + encode_length(len(payload))
        + payload
        + b"\x86\x84\x02iI\x01\x05\x92\x84\x84\x84\x0cNSDictionary\x00\x94\x84\x01i\x01"
    )


# ---------------------------------------------------------------------------
# AddressBook
# ---------------------------------------------------------------------------

def create_addressbook_db(db_path: Path, records: List[Dict]) -> None:
    """Create an AddressBook-v22.abcddb with the given person records."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    cur = conn.cursor()
    cur.execute("""
        CREATE TABLE ZABCDRECORD (
            Z_PK INTEGER PRIMARY KEY,
            ZFIRSTNAME VARCHAR,
            ZLASTNAME VARCHAR,
            ZORGANIZATION VARCHAR,
            ZNICKNAME VARCHAR
        )
    """)
    cur.execute("""
        CREATE TABLE ZABCDPHONENUMBER (
            Z_PK INTEGER PRIMARY KEY,
            ZOWNER INTEGER,
            ZFULLNUMBER VARCHAR,
            ZORDERINGINDEX INTEGER
        )
    """)
    cur.execute("""
        CREATE TABLE ZABCDEMAILADDRESS (
            Z_PK INTEGER PRIMARY KEY,
            ZOWNER INTEGER,
            ZADDRESS VARCHAR,
            ZORDERINGINDEX INTEGER
        )
    """)

    for pk, record in enumerate(records, 1):
        cur.execute(
            "INSERT INTO ZABCDRECORD (Z_PK, ZFIRSTNAME, ZLASTNAME, ZORGANIZATION, ZNICKNAME) VALUES (?, ?, ?, ?, ?)",
            (pk, record.get("first"), record.get("last"), record.get("org"), record.get("nick")),
        )
        for i, phone in enumerate(record.get("phones", [])):
            cur.execute(
                "INSERT INTO ZABCDPHONENUMBER (ZOWNER, ZFULLNUMBER, ZORDERINGINDEX) VALUES (?, ?, ?)",
                (pk, phone, i),
            )
        for i, email in enumerate(record.get("emails", [])):
            cur.execute(
                "INSERT INTO ZABCDEMAILADDRESS (ZOWNER, ZADDRESS, ZORDERINGINDEX) VALUES (?, ?, ?)",
                (pk, email, i),
            )

    conn.commit()
    conn.close()


PRIMARY_CONTACTS = [
    {"first": "Mom", "phones": ["+1 (555) 123-4567"]},
    {"first": "John", "last": "Smith", "nick": "Johnny",
     "phones": ["555-987-6543"], "emails": [" John.Smith@Example.com "]},
    {"org": "Momentum Labs", "phones": ["+1 555 444 5555"]},
    {"org": "Acme Corp", "phones": ["+44 20 7946 0958"]},
    {"first": "Jane", "last": "Doe", "phones": ["+1 555 222 3333"]},
    # Nickname only: not joined
    {"nick": "Ghost", "phones": ["5550001111"]},
    # Too short to be a phone number
    {"first": "Shortcode", "phones": ["123"]},
    # Name but no handle
    {"first": "Nobody", "last": "Reachable"},
]

SECONDARY_CONTACTS = [
    {"first": "Luisa", "last": "Fernandez", "emails": ["luisa@example.com"]},
]


@pytest.fixture
def addressbook_dir(tmp_path, monkeypatch):
    """AddressBook root with two account sources and ADDRESSBOOK_DIR pointing at it."""
    root = tmp_path / "AddressBook"
    create_addressbook_db(root / "Sources" / "A-primary" / "AddressBook-v22.abcddb", PRIMARY_CONTACTS)
    create_addressbook_db(root / "Sources" / "B-secondary" / "AddressBook-v22.abcddb", SECONDARY_CONTACTS)
    monkeypatch.setenv("ADDRESSBOOK_DIR", str(root))
    return root


@pytest.fixture
def addressbook_paths(addressbook_dir):
    return sorted(str(p) for p in addressbook_dir.glob("Sources/*/AddressBook-v22.abcddb"))


@pytest.fixture
def resolver(addressbook_paths):
    return ContactResolver(sources=lambda: addressbook_paths)


# ---------------------------------------------------------------------------
# chat.db
# ---------------------------------------------------------------------------

def create_messages_db(db_path: Path) -> None:
    """Create a test database with the same schema as macOS chat.db."""
    conn = sqlite3.connect(db_path)
    cur = conn.cursor()
    cur.execute("""
        CREATE TABLE handle (
            ROWID INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL,
            service TEXT DEFAULT 'iMessage'
        )
    """)
    cur.execute("""
        CREATE TABLE chat (
            ROWID INTEGER PRIMARY KEY AUTOINCREMENT,
            guid TEXT UNIQUE NOT NULL,
            chat_identifier TEXT,
            room_name TEXT,
            display_name TEXT
        )
    """)
    cur.execute("""
        CREATE TABLE message (
            ROWID INTEGER PRIMARY KEY AUTOINCREMENT,
            guid TEXT UNIQUE NOT NULL,
            text TEXT,
            attributedBody BLOB,
            handle_id INTEGER DEFAULT 0,
            date INTEGER,
            is_from_me INTEGER DEFAULT 0,
            cache_has_attachments INTEGER DEFAULT 0
        )
    """)
    cur.execute("""
        CREATE TABLE chat_message_join (
            chat_id INTEGER,
            message_id INTEGER,
            message_date INTEGER DEFAULT 0,
            PRIMARY KEY (chat_id, message_id)
        )
    """)
    cur.execute("""
        CREATE TABLE chat_handle_join (
            chat_id INTEGER,
            handle_id INTEGER,
            UNIQUE (chat_id, handle_id)
        )
    """)
    cur.execute("""
        CREATE TABLE attachment (
            ROWID INTEGER PRIMARY KEY AUTOINCREMENT,
            guid TEXT UNIQUE NOT NULL,
            filename TEXT,
            mime_type TEXT,
            transfer_name TEXT,
            total_bytes INTEGER DEFAULT 0
        )
    """)
    cur.execute("""
        CREATE TABLE message_attachment_join (
            message_id INTEGER,
            attachment_id INTEGER,
            UNIQUE (message_id, attachment_id)
        )
    """)
    conn.commit()
    conn.close()


def populate_messages_db(db_path: Path, attachment_dir: Path) -> None:
    """Populate the test database with a few conversations."""
    conn = sqlite3.connect(db_path)
    cur = conn.cursor()

    handles = [
        (1, "+15551234567"),  # Mom
        (2, "+15559876543"),  # John Smith
        (3, "luisa@example.com"),  # Luisa
        (4, "+15550009999"),  # not in contacts
    ]
    cur.executemany("INSERT INTO handle (ROWID, id) VALUES (?, ?)", handles)

    chats = [
        (1, "iMessage;-;+15551234567", "+15551234567", None, ""),
        (2, "iMessage;-;+15559876543", "+15559876543", None, ""),
        (3, "iMessage;-;luisa@example.com", "luisa@example.com", None, ""),
        (4, "iMessage;+;chat123456", "chat123456", "chat123456", "Family"),
        (5, "SMS;-;+15550009999", "+15550009999", None, None),
    ]
    cur.executemany(
        "INSERT INTO chat (ROWID, guid, chat_identifier, room_name, display_name) VALUES (?, ?, ?, ?, ?)",
        chats,
    )
    cur.executemany(
        "INSERT INTO chat_handle_join (chat_id, handle_id) VALUES (?, ?)",
        [(1, 1), (2, 2), (3, 3), (4, 1), (4, 2), (5, 4)],
    )

    # (rowid, text, attributedBody, handle_id, unix_ts, is_from_me, has_attachments, chat_id)
    messages = [
        (1, None, make_attributed_body("Hello world"), 1, BASE_TS, 0, 0, 1),
        (2, "Hi Mom", None, 1, BASE_TS + 60, 1, 0, 1),
        (3, "Lunch tomorrow?", None, 2, BASE_TS + 120, 0, 0, 2),
        (4, None, b"\x04\x0bstreamtyped no string here", 2, BASE_TS + 180, 0, 0, 2),
        (5, "Family dinner at 7", None, 2, BASE_TS + 240, 0, 0, 4),
        (6, "See you soon", None, 3, BASE_TS + 300, 0, 0, 3),
        (7, "", make_attributed_body("Check this photo"), 1, BASE_TS + 360, 0, 1, 1),
        (8, "Your code is 123456", None, 4, BASE_TS + 420, 0, 0, 5),
        (9, "Recent ping", None, 1, time.time() - 3600, 0, 0, 1),
    ]
    for rowid, text, body, handle_id, ts, is_from_me, has_attachments, chat_id in messages:
        cur.execute(
            """INSERT INTO message
               (ROWID, guid, text, attributedBody, handle_id, date, is_from_me, cache_has_attachments)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (rowid, f"msg-{rowid}", text, body, handle_id, imessage_timestamp(ts), is_from_me, has_attachments),
        )
        cur.execute(
            "INSERT INTO chat_message_join (chat_id, message_id, message_date) VALUES (?, ?, ?)",
            (chat_id, rowid, imessage_timestamp(ts)),
        )

    png_path = attachment_dir / "diagram.png"
    png_path.write_bytes(PNG_BYTES)
    attachments = [
        (1, "att-1", "~/Library/Messages/Attachments/does-not-exist/IMG_0001.jpeg", "image/jpeg", "IMG_0001.jpeg", 2048),
        (2, "att-2", str(png_path), "image/png", "diagram.png", len(PNG_BYTES)),
    ]
    cur.executemany(
        "INSERT INTO attachment (ROWID, guid, filename, mime_type, transfer_name, total_bytes) VALUES (?, ?, ?, ?, ?, ?)",
        attachments,
    )
    cur.executemany(
        "INSERT INTO message_attachment_join (message_id, attachment_id) VALUES (?, ?)",
        [(7, 1), (7, 2)],
    )

    conn.commit()
    conn.close()


@pytest.fixture
def messages_db(tmp_path, monkeypatch):
    """chat.db populated with test data, with IMESSAGE_DB_PATH pointing at it."""
    db_path = tmp_path / "chat.db"
    attachment_dir = tmp_path / "attachments"
    attachment_dir.mkdir()
    create_messages_db(db_path)
    populate_messages_db(db_path, attachment_dir)
    monkeypatch.setenv("IMESSAGE_DB_PATH", str(db_path))
    return db_path


@pytest.fixture
def missing_messages_db(tmp_path, monkeypatch):
    path = tmp_path / "nowhere" / "chat.db"
    monkeypatch.setenv("IMESSAGE_DB_PATH", str(path))
    return path
