"""
Mail session adapters over the standard library IMAP and POP3 clients.

Two session shapes are exposed to the poll cycle:

    ImapSession (folder-capable)
        list_folders() -> [name]
        select_folder(name) -> FolderStatus(messages, unseen)
        search_unseen() -> [uid]
        fetch([uid]) -> iterator of FetchedMessage
        close()

    Pop3Session (inbox-only)
        stat() -> message count
        fetch_all() -> iterator of FetchedMessage
        close()

Only header fields are retrieved (From, Subject, Message-ID). IMAP fetches use
BODY.PEEK so the messages stay unread on the server; POP3 uses TOP n 0 with a
fallback to RETR for servers without TOP.

Every socket is opened with a timeout so a hung server cannot block a
supervisor forever.

Usage:
    >>> with open_session(account, password) as session:
    ...     for folder in session.list_folders():
    ...         status = session.select_folder(folder)
"""
import email
import imaplib
import logging
import poplib
import re
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Union

from mailwatch.identity import decode_mime_header
from mailwatch.models import AccountConfig, FetchedMessage, FolderStatus, Protocol

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

HEADER_FIELDS = "(FROM SUBJECT MESSAGE-ID)"

# b'(\\HasNoChildren) "/" "INBOX"' or b'(\\HasNoChildren) "." Work'
_LIST_RE = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)$')
_STATUS_RE = re.compile(r'\((?P<items>[^)]*)\)\s*$')
_UID_RE = re.compile(rb'UID (\d+)')
_SIZE_RE = re.compile(rb'RFC822\.SIZE (\d+)')


class MailSessionError(Exception):
    """Base exception for mail session failures."""
    pass


class MailConnectionError(MailSessionError):
    """
    Raised when connecting or authenticating fails.

    Covers network errors, TLS failures and rejected credentials. A
    connection error aborts the whole poll cycle.
    """
    pass


class MailFolderError(MailSessionError):
    """Raised when a folder cannot be listed, selected or searched."""
    pass


class MailFetchError(MailSessionError):
    """Raised when message headers cannot be fetched."""
    pass


def _quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', r'\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace('\\\\', '\\')
    return value


def parse_list_response(data: Sequence) -> List[str]:
    """
    Parse the payload of an IMAP LIST response into folder names.

    Folders flagged \\Noselect are dropped since they cannot be opened.
    Literal-encoded names (returned by imaplib as tuples) are supported.
    """
    folders = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            # (b'(\\HasNoChildren) "/" {8}', b'Folder X')
            prefix = item[0].decode('utf-8', errors='replace')
            literal = item[1].decode('utf-8', errors='replace')
            line = re.sub(r'\{\d+\}$', '', prefix).rstrip() + ' "' + literal.replace('"', '\\"') + '"'
        else:
            line = item.decode('utf-8', errors='replace') if isinstance(item, bytes) else str(item)

        match = _LIST_RE.match(line.strip())
        if not match:
            logger.debug(f"Unparseable LIST line: {line!r}")
            continue
        if '\\noselect' in match.group('flags').lower():
            continue
        folders.append(_unquote(match.group('name')))
    return folders


def parse_status_response(data: Sequence) -> Dict[str, int]:
    """Parse b'"INBOX" (MESSAGES 12 UNSEEN 3)' into {'MESSAGES': 12, 'UNSEEN': 3}."""
    if not data or data[0] is None:
        return {}
    raw = data[0]
    line = raw.decode('utf-8', errors='replace') if isinstance(raw, bytes) else str(raw)
    match = _STATUS_RE.search(line)
    if not match:
        return {}
    tokens = match.group('items').split()
    result = {}
    for key, value in zip(tokens[0::2], tokens[1::2]):
        try:
            result[key.upper()] = int(value)
        except ValueError:
            continue
    return result


def _message_from_headers(seq: str, header_bytes: bytes, size: Optional[int]) -> FetchedMessage:
    msg = email.message_from_bytes(header_bytes)
    return FetchedMessage(
        seq=seq,
        sender=decode_mime_header(msg.get('From')),
        subject=decode_mime_header(msg.get('Subject')),
        message_id=(msg.get('Message-ID') or '').strip(),
        size=size,
    )


def connect_imap(host: str, port: int, user: str, password: str, timeout: float = DEFAULT_TIMEOUT) -> imaplib.IMAP4:
    """
    Connect to an IMAP server with SSL (port 993) or STARTTLS (port 143).

    Other ports are assumed to be implicit SSL.

    Raises:
        MailConnectionError: If the connection or login fails
    """
    imap = None
    try:
        if port == 143:
            imap = imaplib.IMAP4(host, port, timeout=timeout)
            imap.starttls()
        else:
            imap = imaplib.IMAP4_SSL(host, port, timeout=timeout)

        imap.login(user, password)
        logger.debug(f"IMAP connection established with {host}:{port} as {user}")
        return imap
    except imaplib.IMAP4.error as e:
        _safe_logout(imap)
        raise MailConnectionError(f"IMAP login failed for {user}@{host}:{port}: {e}") from e
    except (OSError, EOFError) as e:
        _safe_logout(imap)
        raise MailConnectionError(f"IMAP connection to {host}:{port} failed: {e}") from e


def _safe_logout(imap: Optional[imaplib.IMAP4]) -> None:
    if imap is None:
        return
    try:
        imap.logout()
    except (imaplib.IMAP4.error, OSError, EOFError) as e:
        logger.debug(f"Ignoring error during IMAP logout: {e}")


class ImapSession:
    """Folder-capable session over an authenticated imaplib connection."""

    protocol = Protocol.IMAP

    def __init__(self, imap: imaplib.IMAP4):
        self._imap = imap

    def list_folders(self) -> List[str]:
        try:
            typ, data = self._imap.list()
        except (imaplib.IMAP4.error, OSError, EOFError) as e:
            raise MailFolderError(f"LIST failed: {e}") from e
        if typ != 'OK':
            raise MailFolderError(f"LIST failed: {typ} {data}")
        return parse_list_response(data)

    def select_folder(self, name: str) -> FolderStatus:
        """
        Select a folder read-only and report its message and unseen counts.

        Raises:
            MailFolderError: If the folder does not exist or cannot be opened
        """
        mailbox = _quote_mailbox(name)
        try:
            typ, data = self._imap.status(mailbox, '(MESSAGES UNSEEN)')
            if typ != 'OK':
                raise MailFolderError(f"STATUS {name} failed: {typ} {data}")
            counts = parse_status_response(data)

            typ, data = self._imap.select(mailbox, readonly=True)
            if typ != 'OK':
                raise MailFolderError(f"SELECT {name} failed: {typ} {data}")
        except (imaplib.IMAP4.error, OSError, EOFError) as e:
            raise MailFolderError(f"SELECT {name} failed: {e}") from e

        messages = counts.get('MESSAGES')
        if messages is None:
            try:
                messages = int(data[0])
            except (TypeError, ValueError, IndexError):
                messages = 0
        return FolderStatus(messages=messages, unseen=counts.get('UNSEEN', 0))

    def search_unseen(self) -> List[str]:
        try:
            typ, data = self._imap.uid('SEARCH', None, 'UNSEEN')
        except (imaplib.IMAP4.error, OSError, EOFError) as e:
            raise MailFolderError(f"UID SEARCH UNSEEN failed: {e}") from e
        if typ != 'OK':
            raise MailFolderError(f"UID SEARCH UNSEEN failed: {typ} {data}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    def fetch(self, uids: Sequence[str]) -> Iterator[FetchedMessage]:
        """
        Fetch header fields for the given UIDs in the currently selected folder.

        Raises:
            MailFetchError: If the UID FETCH command fails
        """
        if not uids:
            return
        uid_set = ",".join(str(uid) for uid in uids)
        try:
            typ, data = self._imap.uid(
                'FETCH', uid_set, f'(UID RFC822.SIZE BODY.PEEK[HEADER.FIELDS {HEADER_FIELDS}])'
            )
        except (imaplib.IMAP4.error, OSError, EOFError) as e:
            raise MailFetchError(f"UID FETCH {uid_set} failed: {e}") from e
        if typ != 'OK':
            raise MailFetchError(f"UID FETCH {uid_set} failed: {typ} {data}")

        for item in data or []:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            meta, header_bytes = item[0], item[1]
            uid_match = _UID_RE.search(meta)
            if not uid_match:
                logger.debug(f"FETCH item without UID: {meta!r}")
                continue
            size_match = _SIZE_RE.search(meta)
            size = int(size_match.group(1)) if size_match else None
            yield _message_from_headers(uid_match.group(1).decode(), header_bytes, size)

    def close(self) -> None:
        _safe_logout(self._imap)


def connect_pop3(host: str, port: int, user: str, password: str, timeout: float = DEFAULT_TIMEOUT) -> poplib.POP3:
    """
    Connect to a POP3 server with SSL (default) or STLS (port 110).

    Raises:
        MailConnectionError: If the connection or authentication fails
    """
    pop = None
    try:
        if port == 110:
            pop = poplib.POP3(host, port, timeout=timeout)
            pop.stls()
        else:
            pop = poplib.POP3_SSL(host, port, timeout=timeout)
        pop.user(user)
        pop.pass_(password)
        logger.debug(f"POP3 connection established with {host}:{port} as {user}")
        return pop
    except poplib.error_proto as e:
        _safe_quit(pop)
        raise MailConnectionError(f"POP3 authentication failed for {user}@{host}:{port}: {e}") from e
    except OSError as e:
        _safe_quit(pop)
        raise MailConnectionError(f"POP3 connection to {host}:{port} failed: {e}") from e


def _safe_quit(pop: Optional[poplib.POP3]) -> None:
    if pop is None:
        return
    try:
        pop.quit()
    except (poplib.error_proto, OSError) as e:
        logger.debug(f"Ignoring error during POP3 quit: {e}")


def _parse_pairs(lines: Sequence[bytes]) -> Dict[int, str]:
    pairs = {}
    for line in lines:
        parts = line.decode('utf-8', errors='replace').split()
        if len(parts) >= 2 and parts[0].isdigit():
            pairs[int(parts[0])] = parts[1]
    return pairs


class Pop3Session:
    """
    Inbox-only session over an authenticated poplib connection.

    POP3 has no unseen flag; every message in the maildrop is enumerated and
    deduplication relies entirely on the notification history.
    """

    protocol = Protocol.POP3

    def __init__(self, pop: poplib.POP3):
        self._pop = pop

    def stat(self) -> int:
        try:
            count, _ = self._pop.stat()
        except (poplib.error_proto, OSError) as e:
            raise MailFetchError(f"POP3 STAT failed: {e}") from e
        return count

    def _uidls(self) -> Dict[int, str]:
        try:
            _, lines, _ = self._pop.uidl()
        except poplib.error_proto as e:
            logger.debug(f"Server does not support UIDL, falling back to message numbers: {e}")
            return {}
        except OSError as e:
            raise MailFetchError(f"POP3 UIDL failed: {e}") from e
        return _parse_pairs(lines)

    def _sizes(self) -> Dict[int, int]:
        try:
            _, lines, _ = self._pop.list()
        except poplib.error_proto as e:
            logger.debug(f"POP3 LIST failed, sizes unavailable: {e}")
            return {}
        except OSError as e:
            raise MailFetchError(f"POP3 LIST failed: {e}") from e
        return {num: int(size) for num, size in _parse_pairs(lines).items() if size.isdigit()}

    def _headers(self, number: int) -> bytes:
        try:
            _, lines, _ = self._pop.top(number, 0)
        except poplib.error_proto:
            _, lines, _ = self._pop.retr(number)
        return b"\r\n".join(lines)

    def fetch_all(self, count: Optional[int] = None) -> Iterator[FetchedMessage]:
        """
        Yield header views of every message in the maildrop, lowest number first.

        A message that cannot be retrieved is logged and skipped.

        Args:
            count: Message count from a preceding stat(); issued again when omitted

        Raises:
            MailFetchError: If STAT, UIDL or LIST fails on the socket
        """
        if count is None:
            count = self.stat()
        if count == 0:
            return
        uidls = self._uidls()
        sizes = self._sizes()

        for number in range(1, count + 1):
            try:
                raw = self._headers(number)
            except (poplib.error_proto, OSError) as e:
                logger.warning(f"POP3 retrieve of message {number} failed, skipping: {e}")
                continue
            seq = uidls.get(number, str(number))
            yield _message_from_headers(seq, raw, sizes.get(number))

    def close(self) -> None:
        _safe_quit(self._pop)


MailSession = Union[ImapSession, Pop3Session]


def create_session(account: AccountConfig, password: str, timeout: float = DEFAULT_TIMEOUT) -> MailSession:
    """
    Open an authenticated session for an account.

    Raises:
        MailConnectionError: If the connection or authentication fails
    """
    if account.protocol is Protocol.POP3:
        return Pop3Session(connect_pop3(account.server, account.port, account.username, password, timeout))
    return ImapSession(connect_imap(account.server, account.port, account.username, password, timeout))


@contextmanager
def open_session(account: AccountConfig, password: str, timeout: float = DEFAULT_TIMEOUT):
    """
    Context manager yielding an authenticated session, closed on exit.

    Usage:
        with open_session(account, password) as session:
            count = session.stat()
    """
    session = create_session(account, password, timeout)
    try:
        yield session
    finally:
        session.close()


def check_connection(account: AccountConfig, password: str, timeout: float = DEFAULT_TIMEOUT) -> None:
    """
    Verify that the account's server accepts its credentials.

    For POP3 a STAT is issued as well, since some servers only reject on
    the first transaction command.

    Raises:
        MailConnectionError: If the connection or authentication fails
    """
    with open_session(account, password, timeout) as session:
        if isinstance(session, Pop3Session):
            try:
                session.stat()
            except MailFetchError as e:
                raise MailConnectionError(str(e)) from e
    logger.info(f"[{account.email}] Connection test succeeded ({account.protocol.value})")


def list_remote_folders(account: AccountConfig, password: str, timeout: float = DEFAULT_TIMEOUT) -> List[str]:
    """
    List the folders available on the account's server.

    Inbox-only protocols report the single implicit mailbox 'INBOX'.

    Raises:
        MailConnectionError: If the connection fails
        MailFolderError: If the folder listing fails
    """
    if account.protocol is Protocol.POP3:
        return ['INBOX']
    with open_session(account, password, timeout) as session:
        return session.list_folders()
