"""
Sending messages and tapback reactions through AppleScript.
"""
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Tapback kinds and the index Messages' "add reaction" expects.
REACTION_TYPES = {
    'love': 0,
    'like': 1,
    'dislike': 2,
    'laugh': 3,
    'emphasize': 4,
    'question': 5,
}

REACTION_EMOJI = {
    'love': '❤️',
    'like': '👍',
    'dislike': '👎',
    'laugh': '😂',
    'emphasize': '‼️',
    'question': '❓',
}


def run_applescript(script: str) -> str:
    """Run an AppleScript and return the result."""
    try:
        proc = subprocess.Popen(['osascript', '-e', script],
                                stdout=subprocess.PIPE,
                                stderr=subprocess.PIPE)
    except OSError as e:
        return f"Error: {e}"
    out, err = proc.communicate()
    if proc.returncode != 0:
        return f"Error: {err.decode('utf-8').strip()}"
    return out.decode('utf-8').strip()


def escape_applescript_string(s: str) -> str:
    """Escape backslashes, then double quotes, for an AppleScript string literal."""
    return s.replace('\\', '\\\\').replace('"', '\\"')


@dataclass
class SendResult:
    ok: bool
    detail: str


class MessageSender:
    """Sends through the Messages app. Results are passed back uninterpreted."""

    def send(self, target: str, text: str) -> SendResult:
        """
        Send ``text`` to a phone number or email.

        The text is handed to AppleScript through a temporary file so that
        quotes and newlines in the message need no escaping.
        """
        fd, file_path = tempfile.mkstemp(suffix='.txt', prefix='imessage_')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)

            safe_target = escape_applescript_string(target)
            command = (
                f'tell application "Messages" to send (read (POSIX file "{file_path}") as «class utf8») '
                f'to participant "{safe_target}" of (1st service whose service type = iMessage)'
            )
            result = run_applescript(command)
        finally:
            try:
                os.remove(file_path)
            except OSError:
                pass

        if result.startswith("Error:"):
            logger.error(f"Failed to send message to {target}: {result}")
            return SendResult(ok=False, detail=f"Failed to send message: {result[6:].strip()}")
        return SendResult(ok=True, detail=f"Message sent to {target}")

    def react(self, message_id: int, reaction: str) -> SendResult:
        """Add a tapback to a message by ROWID."""
        if reaction not in REACTION_TYPES:
            return SendResult(ok=False, detail=f"Unknown reaction '{reaction}'. Use one of: {', '.join(REACTION_TYPES)}")

        script = f'''
        tell application "Messages"
            set targetMessage to a reference to message id {int(message_id)}
            add reaction {REACTION_TYPES[reaction]} to targetMessage
        end tell
        '''
        result = run_applescript(script)
        if result.startswith("Error:"):
            logger.error(f"Failed to react to message {message_id}: {result}")
            return SendResult(
                ok=False,
                detail=f"Failed to send reaction: {result[6:].strip()}. Note: Reactions may not work on all iMessage versions.",
            )
        return SendResult(ok=True, detail=f"Reaction sent: {REACTION_EMOJI[reaction]} to message {message_id}")
