"""
Message identity and header helpers.

A message identity is the deduplication key stored in the notification
history. It is built from the protocol, the folder (IMAP only), the provider
reference and the Message-ID header:

    IMAP, with Message-ID      INBOX-42-<abc@host>
    IMAP, without Message-ID   INBOX-42
    POP3, with Message-ID      pop3-<uidl>-<abc@host>
    POP3, content fallback     pop3-<uidl>-sha1:<digest>
    POP3, last resort          pop3-<uidl>-<time_ns>

For IMAP the provider reference is the UID, which is stable within a folder.
For POP3 it is the UIDL when the server supports it, otherwise the message
number. Embedding the Message-ID keeps a reused sequence number from
colliding with the previous occupant.
"""
import hashlib
import time
from email.errors import HeaderParseError
from email.header import decode_header
from email.utils import parseaddr
from typing import Optional, Union

from mailwatch.models import Protocol


def build_identity(
    protocol: Protocol,
    folder: Optional[str],
    seq: Union[str, int],
    message_id: Optional[str] = None,
    content_key: Optional[str] = None,
) -> str:
    """
    Build the deduplication identity for a fetched message.

    Args:
        protocol: Protocol the message was fetched over
        folder: Folder name (IMAP); ignored for POP3
        seq: Provider reference (IMAP UID, POP3 UIDL or message number)
        message_id: Message-ID header value, empty or None when absent
        content_key: POP3 only. Deterministic digest used when there is no
            Message-ID (see content_digest)

    Returns:
        Identity string. The function is total over its inputs.
    """
    message_id = (message_id or "").strip()

    if protocol is Protocol.POP3:
        if message_id:
            return f"pop3-{seq}-{message_id}"
        if content_key:
            return f"pop3-{seq}-sha1:{content_key}"
        # Not deterministic across fetches; only reached when the caller has
        # neither a Message-ID nor any header content to hash.
        return f"pop3-{seq}-{time.time_ns()}"

    folder = folder or ""
    if message_id:
        return f"{folder}-{seq}-{message_id}"
    return f"{folder}-{seq}"


def content_digest(sender: str, subject: str, size: Optional[int] = None) -> str:
    """Stable SHA-1 over sender, subject and size for messages without a Message-ID."""
    material = "\x00".join([sender or "", subject or "", "" if size is None else str(size)])
    return hashlib.sha1(material.encode('utf-8', errors='replace')).hexdigest()


def extract_email_address(from_header: str) -> str:
    """
    Extract the bare address from a From header.

    'Jane <jane@example.com>' -> 'jane@example.com'. A header without an
    '@' (e.g. 'Mailer Daemon') is returned trimmed, so filters can still
    match it.
    """
    if not from_header:
        return ""
    if "@" not in from_header:
        return from_header.strip()
    _, address = parseaddr(from_header)
    return address.strip() if address else from_header.strip()


def decode_mime_header(header) -> str:
    """
    Decode an RFC 2047 encoded header into text.

    A malformed encoded word (e.g. bad base64) yields the raw header text.
    """
    if not header:
        return ''
    try:
        parts = decode_header(str(header))
    except (HeaderParseError, ValueError):
        return str(header)
    decoded = ''
    for part, enc in parts:
        if isinstance(part, bytes):
            try:
                decoded += part.decode(enc or 'utf-8', errors='replace')
            except LookupError:
                decoded += part.decode('utf-8', errors='replace')
        else:
            decoded += str(part)
    return decoded
