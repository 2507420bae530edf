"""
Plain-text recovery from the message.attributedBody column.

Since macOS Ventura most rows in chat.db leave the ``text`` column NULL and
store the content as a typedstream-archived NSAttributedString instead. There
is no published grammar for that format; the constants below were worked out
from observed samples. The string payload follows the class name
``NSString``, then a few header bytes, then a ``+`` byte and a length prefix:

    NSString 01 94 84 01 2b <len> <utf-8 bytes>

Anything that does not fit this shape is treated as "no text", never as an
error. Only the 0x81 and 0x82 length tags are known. A first length byte of
0x83 or above is an unrecognised tag (a future OS release may add one) and
comes back as None rather than garbage.
"""
from typing import Optional, Tuple

# Class name preceding the embedded string payload.
NSSTRING_MARKER = b"NSString"

# Byte ('+') that precedes the length field in every sample seen so far.
LENGTH_DELIMITER = 0x2B

# How far past the marker to look for the delimiter.
DELIMITER_SEARCH_WINDOW = 12

# Length tags. A first byte below 0x81 is the length itself.
LENGTH_TAG_UINT16 = 0x81
LENGTH_TAG_UINT32 = 0x82


def _read_length(buf: bytes, pos: int) -> Optional[Tuple[int, int]]:
    """Return (length, payload_offset) for the length field at ``pos``."""
    if pos >= len(buf):
        return None

    tag = buf[pos]
    pos += 1

    if tag == LENGTH_TAG_UINT16:
        if pos + 2 > len(buf):
            return None
        return int.from_bytes(buf[pos:pos + 2], "big"), pos + 2
    if tag == LENGTH_TAG_UINT32:
        if pos + 4 > len(buf):
            return None
        return int.from_bytes(buf[pos:pos + 4], "big"), pos + 4
    if tag >= LENGTH_TAG_UINT16:
        return None

    return tag, pos


def extract_text_from_attributed_body(blob) -> Optional[str]:
    """
    Extract message text from an attributedBody blob.

    Args:
        blob: Raw column value. Anything other than a bytes-like object
              yields None.

    Returns:
        The decoded text, or None when no string payload can be located.
    """
    if not isinstance(blob, (bytes, bytearray, memoryview)):
        return None
    buf = bytes(blob)

    idx = buf.find(NSSTRING_MARKER)
    if idx == -1:
        return None

    pos = idx + len(NSSTRING_MARKER)
    search_end = min(pos + DELIMITER_SEARCH_WINDOW, len(buf))
    while pos < search_end and buf[pos] != LENGTH_DELIMITER:
        pos += 1
    if pos >= search_end:
        return None

    length_field = _read_length(buf, pos + 1)
    if length_field is None:
        return None
    text_len, start = length_field

    if text_len <= 0 or start + text_len > len(buf):
        return None

    return buf[start:start + text_len].decode("utf-8", errors="replace")
