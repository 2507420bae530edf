#!/usr/bin/env python3
"""
iMessage MCP - tool server over stdio
"""
import logging
import os
import sys
from typing import List, Optional, Union

from mcp.server.fastmcp import FastMCP, Image
from mcp.server.fastmcp.exceptions import ToolError

from imessage_mcp.attachments import load_attachment
from imessage_mcp.contacts import ContactResolver, check_addressbook_access, rank_contacts
from imessage_mcp.messages import (
    MessagesDBError,
    check_messages_db_access,
    get_attachments_for_message,
    get_conversation,
    get_recent_messages,
    list_recent_chats,
    looks_like_handle,
    search_messages,
)
from imessage_mcp.sender import REACTION_EMOJI, REACTION_TYPES, MessageSender

logger = logging.getLogger("imessage_mcp")

mcp = FastMCP("imessage-server")

# Shared by every tool call for the life of the process
contact_resolver = ContactResolver()
message_sender = MessageSender()


def _check_limit(limit: int) -> None:
    if limit <= 0:
        raise ToolError("limit must be a positive number.")


def _reading(tool_name: str, fn, *args, **kwargs) -> str:
    """Run a read against chat.db, turning store failures into tool errors."""
    try:
        return fn(*args, **kwargs)
    except MessagesDBError as e:
        logger.error(f"Error in {tool_name}: {e}")
        raise ToolError(str(e)) from e


@mcp.tool()
def read_recent_messages(limit: int = 50, include_group_chats: bool = True) -> str:
    """
    Read recent iMessages from your Messages app.

    Args:
        limit: Number of recent messages to retrieve (default: 50)
        include_group_chats: Include group chat messages (default: true)
    """
    logger.info(f"Reading recent messages: limit={limit}, include_group_chats={include_group_chats}")
    _check_limit(limit)
    return _reading(
        "read_recent_messages", get_recent_messages,
        contact_resolver, limit=limit, include_group_chats=include_group_chats,
    )


@mcp.tool(name="search_messages")
def search_messages_tool(query: str, limit: int = 25) -> str:
    """
    Search for messages by contact name, phone number, or message content.

    Args:
        query: Search query (contact name, phone, or message text)
        limit: Maximum number of results (default: 25)
    """
    logger.info(f"Searching messages: query={query!r}, limit={limit}")
    if not query or not query.strip():
        raise ToolError("Search query cannot be empty.")
    _check_limit(limit)
    return _reading("search_messages", search_messages, contact_resolver, query.strip(), limit=limit)


@mcp.tool(name="get_conversation")
def get_conversation_tool(contact: str, limit: int = 100, hours_ago: Optional[float] = None) -> str:
    """
    Get full conversation thread with a specific contact, optionally filtered by time.
    Shows text content and indicates attachments.

    Args:
        contact: Contact name or phone number
        limit: Number of messages to retrieve (default: 100)
        hours_ago: Optional: Only show messages from the last N hours
    """
    logger.info(f"Getting conversation: contact={contact!r}, limit={limit}, hours_ago={hours_ago}")
    _check_limit(limit)
    if hours_ago is not None and hours_ago <= 0:
        raise ToolError("hours_ago must be a positive number.")
    return _reading(
        "get_conversation", get_conversation,
        contact_resolver, str(contact), limit=limit, hours_ago=hours_ago,
    )


@mcp.tool(name="list_recent_chats")
def list_recent_chats_tool(limit: int = 20, hours_ago: Optional[float] = None) -> str:
    """
    List recent active conversations, sorted by most recent activity.

    Args:
        limit: Number of conversations to return (default: 20)
        hours_ago: Only show chats active in the last N hours (optional)
    """
    logger.info(f"Listing recent chats: limit={limit}, hours_ago={hours_ago}")
    _check_limit(limit)
    return _reading("list_recent_chats", list_recent_chats, contact_resolver, limit=limit, hours_ago=hours_ago)


@mcp.tool()
def lookup_contact(name: str, refresh: bool = False) -> str:
    """
    Look up a contact name in macOS Contacts to find their phone number or email.

    Args:
        name: Contact name to search for (e.g., "Mom", "Luisa", "John Smith")
        refresh: Re-read the AddressBook before searching (default: false)
    """
    logger.info(f"Looking up contact: {name!r}")
    if refresh:
        contact_resolver.reset()

    handles = contact_resolver.resolve_name_to_handles(name)
    if not handles:
        return f'No contacts found matching "{name}".'

    ranked = rank_contacts(name, contact_resolver.contacts_for_handles(handles))
    formatted = []
    for i, (contact, contact_handles, _score) in enumerate(ranked, 1):
        phones = [h for h in contact_handles if '@' not in h]
        emails = [h for h in contact_handles if '@' in h]
        entry = f"{i}. {contact.display_name}"
        if phones:
            entry += f"\n   Phones: {', '.join(phones)}"
        if emails:
            entry += f"\n   Emails: {', '.join(emails)}"
        formatted.append(entry)

    return f'Found {len(ranked)} contact(s) matching "{name}":\n\n' + "\n\n".join(formatted)


def resolve_recipient(to: str) -> str:
    """
    Turn a send target into a single handle.

    Phone numbers and emails pass through; names must resolve to exactly one
    handle.
    """
    to = str(to).strip()
    if looks_like_handle(to):
        return to

    handles = contact_resolver.resolve_name_to_handles(to)
    if not handles:
        raise ToolError(f"Could not find any contact matching '{to}'. Use a phone number or email instead.")
    if len(handles) > 1:
        options = "\n".join(
            f"- {contact_resolver.resolve_handle_to_name(h)}: {h}" for h in sorted(handles)
        )
        raise ToolError(f"'{to}' matches several handles. Send to one of them directly:\n{options}")
    return next(iter(handles))


@mcp.tool()
def send_message(to: str, message: str, confirm: bool = False) -> str:
    """
    Send an iMessage to a contact (uses AppleScript). IMPORTANT: Always show the user the
    message content and recipient before sending, and get explicit confirmation.

    Args:
        to: Phone number, email address, or contact name
        message: Message text to send
        confirm: Must be set to true to actually send the message
    """
    target = resolve_recipient(to)
    display_name = contact_resolver.resolve_handle_to_name(target)

    if not confirm:
        return (
            f"Message NOT sent. Confirmation required.\n\n"
            f"To: {display_name} ({target})\nMessage: \"{message}\"\n\n"
            f"To send this message, set confirm=true."
        )

    logger.info(f"Sending message to: {target}")
    result = message_sender.send(target, message)
    if not result.ok:
        raise ToolError(result.detail)
    return f'Message sent to {display_name}: "{message}"'


@mcp.tool()
def react_to_message(message_id: str, reaction: str, confirm: bool = False) -> str:
    """
    React to a message with an emoji (❤️, 👍, 👎, 😂, ‼️, ❓). IMPORTANT: Always show the user
    which message and reaction before sending, and get explicit confirmation.

    Args:
        message_id: The message ID to react to (from conversation results)
        reaction: One of love, like, dislike, laugh, emphasize, question
        confirm: Must be set to true to actually send the reaction
    """
    reaction = reaction.strip().lower()
    if reaction not in REACTION_TYPES:
        raise ToolError(f"Unknown reaction '{reaction}'. Use one of: {', '.join(REACTION_TYPES)}")
    if not str(message_id).strip().isdigit():
        raise ToolError(f"Invalid message ID '{message_id}'.")

    if not confirm:
        return (
            f"Reaction NOT sent. Confirmation required.\n\n"
            f"Message ID: {message_id}\nReaction: {REACTION_EMOJI[reaction]} ({reaction})\n\n"
            f"To send this reaction, set confirm=true."
        )

    logger.info(f"Reacting to message {message_id} with {reaction}")
    result = message_sender.react(int(message_id), reaction)
    if not result.ok:
        raise ToolError(result.detail)
    return result.detail


@mcp.tool()
def get_attachment(message_id: str):
    """
    Get an attachment (image, file) from a message. Returns images directly so they can be
    viewed and analyzed. Use message IDs from get_conversation results.

    Args:
        message_id: The message ROWID to get attachments for
    """
    if not str(message_id).strip().isdigit():
        raise ToolError(f"Invalid message ID '{message_id}'.")
    attachments = _reading("get_attachment", get_attachments_for_message, int(message_id))
    if not attachments:
        return [f"No attachments found for message ID {message_id}."]

    content: List[Union[Image, str]] = []
    for attachment in attachments:
        data, image_format, description = load_attachment(attachment)
        if data is not None:
            content.append(Image(data=data, format=image_format))
        content.append(description)
    return content


@mcp.tool()
def check_db_access() -> str:
    """
    Diagnose Messages database access issues.
    """
    logger.info("Checking database access")
    return check_messages_db_access()


@mcp.tool(name="check_addressbook_access")
def check_addressbook() -> str:
    """
    Diagnose AddressBook access issues.
    """
    logger.info("Checking AddressBook access")
    return check_addressbook_access()


def run_server():
    """Run the MCP server with proper error handling"""
    logging.basicConfig(
        level=os.environ.get("IMESSAGE_MCP_LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )
    try:
        logger.info("Starting iMessage MCP server...")
        mcp.run()
    except Exception as e:
        logger.error(f"Failed to start server: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    run_server()
