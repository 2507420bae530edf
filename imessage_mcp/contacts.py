"""
Contact identity resolution against the macOS AddressBook.

Builds an index between contact names and normalized message handles
(phone numbers and email addresses) from every AddressBook database found on
disk, and resolves names and handles against it.
"""
import enum
import glob
import logging
import os
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from thefuzz import fuzz

logger = logging.getLogger(__name__)

ADDRESSBOOK_DB_NAME = "AddressBook-v22.abcddb"
MIN_PHONE_DIGITS = 7


def normalize_phone_number(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to its digits.

    Numbers with fewer than 7 digits are rejected as short codes or
    fragments. An 11-digit number starting with "1" loses the US country
    code so that "+1 (555) 123-4567" and "5551234567" compare equal. All
    other lengths are returned as-is.
    """
    if not phone:
        return None
    digits = ''.join(c for c in phone if c.isdigit())
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    if len(digits) == 11 and digits.startswith('1'):
        return digits[1:]
    return digits


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lower-case and trim an email address."""
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def normalize_handle(handle: Optional[str]) -> Optional[str]:
    """Normalize a message handle, treating anything with an "@" as an email."""
    if not handle:
        return None
    if '@' in handle:
        return normalize_email(handle)
    return normalize_phone_number(handle)


def clean_name(name: str) -> str:
    """
    Clean a name by removing emojis and extra whitespace.
    """
    emoji_pattern = re.compile(
        "["
        "\U0001F300-\U0001FAFF"  # pictographs, emoticons, transport, symbols
        "\U00002702-\U000027B0"  # dingbats
        "]+"
    )
    name = emoji_pattern.sub('', name)
    name = re.sub(r'[^\w\s\'\-]', '', name, flags=re.UNICODE)
    return re.sub(r'\s+', ' ', name).strip()


@dataclass(frozen=True)
class Contact:
    """Display identity of one AddressBook record."""
    display_name: str
    first_name: str = ""
    last_name: str = ""
    organization: str = ""
    nickname: str = ""

    @property
    def name_tokens(self) -> List[str]:
        """Lower-cased names this contact can be looked up by."""
        tokens = []
        for value in (self.display_name, self.first_name, self.nickname, self.organization):
            token = value.strip().lower()
            if token and token not in tokens:
                tokens.append(token)
        return tokens


def display_name_for(first_name: str, last_name: str, nickname: str, organization: str) -> Optional[str]:
    """
    Pick the name to show for a record.

    Precedence: "first last", first, nickname, last, organization.
    """
    first_name = first_name.strip()
    last_name = last_name.strip()
    if first_name and last_name:
        return f"{first_name} {last_name}"
    for candidate in (first_name, nickname.strip(), last_name, organization.strip()):
        if candidate:
            return candidate
    return None


@dataclass
class ContactIndex:
    """
    Handle → contact and name token → handles mappings.

    ``add`` is the only writer, so every handle that appears under a name
    token also has a contact entry. Re-adding a handle replaces its contact
    (last writer wins).
    """
    handle_to_contact: Dict[str, Contact] = field(default_factory=dict)
    name_to_handles: Dict[str, Set[str]] = field(default_factory=dict)

    def add(self, handle: str, contact: Contact) -> None:
        self.handle_to_contact[handle] = contact
        for token in contact.name_tokens:
            self.name_to_handles.setdefault(token, set()).add(handle)

    def __len__(self) -> int:
        return len(self.handle_to_contact)


# Both joins require a first name, last name or organization. Nickname-only
# records are left out even though the nickname is indexed once a record
# qualifies.
_PHONE_QUERY = """
SELECT
    r.ZFIRSTNAME as first_name,
    r.ZLASTNAME as last_name,
    r.ZORGANIZATION as organization,
    r.ZNICKNAME as nickname,
    p.ZFULLNUMBER as value
FROM
    ZABCDRECORD r
    JOIN ZABCDPHONENUMBER p ON r.Z_PK = p.ZOWNER
WHERE
    p.ZFULLNUMBER IS NOT NULL
    AND (r.ZFIRSTNAME IS NOT NULL OR r.ZLASTNAME IS NOT NULL OR r.ZORGANIZATION IS NOT NULL)
ORDER BY
    r.Z_PK, p.Z_PK
"""

_EMAIL_QUERY = """
SELECT
    r.ZFIRSTNAME as first_name,
    r.ZLASTNAME as last_name,
    r.ZORGANIZATION as organization,
    r.ZNICKNAME as nickname,
    e.ZADDRESS as value
FROM
    ZABCDRECORD r
    JOIN ZABCDEMAILADDRESS e ON r.Z_PK = e.ZOWNER
WHERE
    e.ZADDRESS IS NOT NULL
    AND (r.ZFIRSTNAME IS NOT NULL OR r.ZLASTNAME IS NOT NULL OR r.ZORGANIZATION IS NOT NULL)
ORDER BY
    r.Z_PK, e.Z_PK
"""


def get_addressbook_dir() -> str:
    """Root of the AddressBook data, overridable with ADDRESSBOOK_DIR."""
    return os.environ.get(
        'ADDRESSBOOK_DIR',
        os.path.expanduser("~/Library/Application Support/AddressBook"),
    )


def discover_addressbook_paths() -> List[str]:
    """
    Find every AddressBook database (one per account source).

    Paths are returned sorted so that the merge order, and with it which
    snapshot wins for a shared handle, is stable between runs.
    """
    root = get_addressbook_dir()
    paths = glob.glob(os.path.join(root, "Sources", "*", ADDRESSBOOK_DB_NAME))
    top_level = os.path.join(root, ADDRESSBOOK_DB_NAME)
    if os.path.exists(top_level):
        paths.append(top_level)
    return sorted(paths)


def _contact_from_row(row: sqlite3.Row) -> Optional[Contact]:
    first_name = row["first_name"] or ""
    last_name = row["last_name"] or ""
    organization = row["organization"] or ""
    nickname = row["nickname"] or ""

    display_name = display_name_for(first_name, last_name, nickname, organization)
    if not display_name:
        return None
    return Contact(
        display_name=display_name,
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        organization=organization.strip(),
        nickname=nickname.strip(),
    )


def _index_snapshot(db_path: str, index: ContactIndex) -> int:
    """Add one snapshot's phone and email rows to ``index``. Returns rows added."""
    conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
    try:
        conn.row_factory = sqlite3.Row
        phone_rows = conn.execute(_PHONE_QUERY).fetchall()
        email_rows = conn.execute(_EMAIL_QUERY).fetchall()
    finally:
        conn.close()

    added = 0
    for row in phone_rows:
        contact = _contact_from_row(row)
        if contact is None:
            continue
        phone = row["value"]
        # vCard imports sometimes leave photo metadata glued to the number
        if "X-IMAGETYPE" in phone:
            phone = phone.split("X-IMAGETYPE")[0]
        handle = normalize_phone_number(phone)
        if handle is None:
            continue
        index.add(handle, contact)
        added += 1

    for row in email_rows:
        contact = _contact_from_row(row)
        if contact is None:
            continue
        handle = normalize_email(row["value"])
        if handle is None:
            continue
        index.add(handle, contact)
        added += 1

    return added


def build_contact_index(sources: Iterable[str]) -> ContactIndex:
    """
    Build a ContactIndex from AddressBook snapshots, in the order given.

    A snapshot that cannot be opened or queried is logged and skipped.
    """
    index = ContactIndex()
    for db_path in sources:
        try:
            added = _index_snapshot(db_path, index)
        except sqlite3.Error as e:
            logger.warning(f"Cannot read AddressBook database {db_path}: {e}")
            continue
        logger.debug(f"Indexed {added} handles from {db_path}")
    logger.info(f"Contact index holds {len(index)} handles and {len(index.name_to_handles)} name tokens")
    return index


class ResolverState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    BUILDING = "building"
    READY = "ready"


class ContactResolver:
    """
    Lazily built, memoized view over a ContactIndex.

    The index is built on the first lookup and kept until ``reset``. Contacts
    added to the AddressBook afterwards are not seen until then.
    """

    def __init__(self, sources: Callable[[], Iterable[str]] = discover_addressbook_paths):
        self._sources = sources
        self._lock = threading.Lock()
        self._index: Optional[ContactIndex] = None
        self.state = ResolverState.UNINITIALIZED

    @property
    def index(self) -> ContactIndex:
        # Read once; a concurrent reset may clear the attribute at any time
        index = self._index
        if index is not None:
            return index
        with self._lock:
            if self._index is None:
                self.state = ResolverState.BUILDING
                self._index = self._build()
                self.state = ResolverState.READY
            return self._index

    def _build(self) -> ContactIndex:
        try:
            sources = list(self._sources())
            if not sources:
                logger.warning(
                    "No AddressBook databases found; contact names will not be resolved. "
                    "Grant Full Disk Access to the terminal application if contacts exist."
                )
                return ContactIndex()
            return build_contact_index(sources)
        except Exception as e:
            logger.error(f"Failed to build contact index: {e}")
            return ContactIndex()

    def reset(self) -> None:
        """Drop the cached index; the next lookup rebuilds it."""
        with self._lock:
            self._index = None
            self.state = ResolverState.UNINITIALIZED

    def resolve_handle_to_name(self, handle: Optional[str]) -> Optional[str]:
        """Return the contact name for a handle, or the handle unchanged."""
        normalized = normalize_handle(handle)
        if normalized is None:
            return handle
        contact = self.index.handle_to_contact.get(normalized)
        return contact.display_name if contact else handle

    def resolve_name_to_handles(self, name: Optional[str], exact_only: bool = False) -> Set[str]:
        """
        Find the handles a free-text name refers to.

        An exact token match wins outright. Otherwise every token that
        contains the query, or is contained in it, contributes its handles,
        unless ``exact_only`` is set. Short queries can match broadly; results
        are not ranked here.
        """
        query = (name or "").strip().lower()
        if not query:
            return set()

        name_to_handles = self.index.name_to_handles
        if query in name_to_handles:
            return set(name_to_handles[query])
        if exact_only:
            return set()

        matches = set()
        for token, handles in name_to_handles.items():
            if query in token or token in query:
                matches.update(handles)
        return matches

    def contacts_for_handles(self, handles: Iterable[str]) -> List[Tuple[Contact, List[str]]]:
        """Group handles by the contact that owns them."""
        handle_to_contact = self.index.handle_to_contact
        grouped: Dict[Contact, List[str]] = {}
        for handle in sorted(handles):
            contact = handle_to_contact.get(handle)
            if contact is not None:
                grouped.setdefault(contact, []).append(handle)
        return list(grouped.items())


def rank_contacts(query: str, contacts: List[Tuple[Contact, List[str]]]) -> List[Tuple[Contact, List[str], int]]:
    """
    Order contact matches by similarity to the query (best first).

    Scores are thefuzz WRatio values, 0-100, taken over the best of the
    contact's name tokens.
    """
    cleaned_query = clean_name(query).lower()
    ranked = []
    for contact, handles in contacts:
        score = max(
            (fuzz.WRatio(cleaned_query, clean_name(token)) for token in contact.name_tokens),
            default=0,
        )
        ranked.append((contact, handles, score))
    return sorted(ranked, key=lambda x: (-x[2], x[0].display_name))


def check_addressbook_access() -> str:
    """Check if the AddressBook databases are accessible and return detailed information."""
    root = get_addressbook_dir()
    if not os.path.exists(root):
        return (
            f"ERROR: AddressBook directory not found at {root}. "
            "PLEASE TELL THE USER TO GRANT FULL DISK ACCESS TO THE TERMINAL APPLICATION AND RESTART."
        )

    db_paths = discover_addressbook_paths()
    if not db_paths:
        return (
            f"ERROR: No AddressBook database files found under {root}. "
            "PLEASE TELL THE USER TO GRANT FULL DISK ACCESS TO THE TERMINAL APPLICATION AND RESTART."
        )

    status = [f"Found {len(db_paths)} AddressBook database files:"]
    for db_path in db_paths:
        try:
            conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
            try:
                count = conn.execute("SELECT COUNT(*) FROM ZABCDRECORD").fetchone()[0]
            finally:
                conn.close()
            status.append(f" - {db_path}: {count} records")
        except sqlite3.Error as e:
            status.append(f" - {db_path}: ERROR {e}")
    return "\n".join(status)
