"""
Attachment metadata and file loading.
"""
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

MIME_TYPES = {
    '.jpg': 'image/jpeg', '.jpeg': 'image/jpeg',
    '.png': 'image/png', '.gif': 'image/gif',
    '.heic': 'image/heic', '.heif': 'image/heif',
    '.webp': 'image/webp', '.tiff': 'image/tiff',
    '.bmp': 'image/bmp', '.pdf': 'application/pdf',
    '.mov': 'video/quicktime', '.mp4': 'video/mp4',
    '.mp3': 'audio/mpeg', '.m4a': 'audio/mp4',
    '.caf': 'audio/x-caf',
}


def guess_mime_type(filename: str) -> str:
    """Guess a MIME type from the file extension."""
    ext = os.path.splitext(filename)[1].lower()
    return MIME_TYPES.get(ext, 'application/octet-stream')


def resolve_attachment_path(filename: Optional[str]) -> Optional[str]:
    """Expand the "~/Library/Messages/..." paths stored in chat.db."""
    if not filename:
        return None
    return os.path.expanduser(filename)


@dataclass
class Attachment:
    attachment_id: int
    message_id: int
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    transfer_name: Optional[str] = None
    total_bytes: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.transfer_name or os.path.basename(self.filename or 'file')

    @property
    def resolved_mime_type(self) -> str:
        return self.mime_type or guess_mime_type(self.display_name)

    @property
    def kind(self) -> str:
        """One of image, video, audio or file."""
        mime = self.resolved_mime_type
        for kind in ('image', 'video', 'audio'):
            if mime.startswith(kind + '/'):
                return kind
        return 'file'

    @property
    def path(self) -> Optional[str]:
        return resolve_attachment_path(self.filename)

    @property
    def is_heic(self) -> bool:
        mime = self.resolved_mime_type
        return 'heic' in mime or 'heif' in mime

    def label(self) -> str:
        return f"[{self.kind}: {self.display_name}]"


def convert_heic_to_jpeg(path: str) -> bytes:
    """Convert a HEIC image with the macOS ``sips`` tool and return the JPEG bytes."""
    fd, out_path = tempfile.mkstemp(suffix='.jpg', prefix='imessage_')
    os.close(fd)
    try:
        subprocess.run(
            ['sips', '-s', 'format', 'jpeg', path, '--out', out_path],
            check=True,
            capture_output=True,
        )
        with open(out_path, 'rb') as f:
            return f.read()
    finally:
        try:
            os.remove(out_path)
        except OSError:
            pass


def load_attachment(attachment: Attachment) -> Tuple[Optional[bytes], Optional[str], str]:
    """
    Read an attachment for display.

    Returns:
        (image_data, image_format, description). ``image_data`` is only set
        for images; HEIC images are converted to JPEG first. Other files come
        back as a description carrying their path.
    """
    name = attachment.display_name
    mime = attachment.resolved_mime_type
    size = attachment.total_bytes
    path = attachment.path

    if not path or not os.path.exists(path):
        return None, None, f"{name} ({mime}, {size} bytes) - file not found on disk"

    if attachment.kind != 'image':
        return None, None, f"{name} ({mime}, {size} bytes)\n   Path: {path}"

    if attachment.is_heic:
        try:
            data = convert_heic_to_jpeg(path)
        except (OSError, subprocess.CalledProcessError) as e:
            logger.warning(f"HEIC conversion failed for {path}: {e}")
            return None, None, f"{name} (HEIC) - conversion failed: {e}"
        return data, 'jpeg', f"{name} (converted from HEIC, {size} bytes)"

    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        return None, None, f"{name} - failed to read: {e}"
    return data, mime.split('/', 1)[1], f"{name} ({mime}, {size} bytes)"
