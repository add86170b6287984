"""
Data models for the account monitoring engine.

Each configured mailbox is split into two parts:

    - AccountConfig: immutable configuration (connection parameters, filter
      policy, folder policy, tunables). Reloading configuration swaps the whole
      value; nothing mutates it in place.
    - AccountRuntime: mutable runtime state (last check time, unread count,
      notified-identifier history) guarded by its own lock.

AccountHandle ties the two together and is the stable reference the fleet
registry hands out. Supervisors and poll cycles hold a handle, never an index
into a list, so adding or removing other accounts cannot invalidate it.

Example:
    >>> config = AccountConfig(email='me@example.com', server='imap.example.com',
    ...                        port=993, username='me@example.com')
    >>> handle = AccountHandle(config)
    >>> handle.runtime.snapshot().unread_count
    0
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from mailwatch.history import NotificationHistory


DEFAULT_CHECK_INTERVAL = 120
DEFAULT_CHECK_HISTORY = 1000


class Protocol(Enum):
    """
    Remote mail access protocol.

    Values:
        IMAP: Folder-capable protocol (multiple named mailboxes, UNSEEN flag)
        POP3: Inbox-only protocol (single flat message list, no unseen flag)
    """
    IMAP = "imap"
    POP3 = "pop3"

    @property
    def is_folder_capable(self) -> bool:
        return self is Protocol.IMAP


class FolderMode(Enum):
    """How the configured folder lists are applied to the live folder listing."""
    ALL = "all"
    INCLUDE = "include"
    EXCLUDE = "exclude"


@dataclass(frozen=True)
class FilterPolicy:
    """
    Include/exclude filter policy for one account.

    Fields:
        include_senders: Sender addresses that opt a message in (exact, case-insensitive)
        exclude_senders: Sender addresses that always reject (exact, case-insensitive)
        include_keywords: Subject substrings that opt a message in (case-insensitive)
        exclude_keywords: Subject substrings that always reject (case-insensitive)
    """
    include_senders: Tuple[str, ...] = ()
    exclude_senders: Tuple[str, ...] = ()
    include_keywords: Tuple[str, ...] = ()
    exclude_keywords: Tuple[str, ...] = ()

    @property
    def is_selective(self) -> bool:
        """True when at least one include rule is configured."""
        return bool(self.include_senders or self.include_keywords)


@dataclass(frozen=True)
class FolderPolicy:
    """Folder selection policy. Ignored for inbox-only protocols."""
    mode: FolderMode = FolderMode.ALL
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AccountConfig:
    """
    Immutable configuration of one monitored mailbox.

    The email address is the account identity: it is the secret-store key,
    the history-file key and the fleet registry key, and must be unique.
    """
    email: str
    server: str
    port: int
    username: str
    protocol: Protocol = Protocol.IMAP
    filters: FilterPolicy = field(default_factory=FilterPolicy)
    folders: FolderPolicy = field(default_factory=FolderPolicy)
    check_interval: int = DEFAULT_CHECK_INTERVAL
    check_history: int = DEFAULT_CHECK_HISTORY
    enable_notification_sound: bool = True

    def __post_init__(self):
        if not self.email:
            raise ValueError("Account email cannot be empty")
        if self.check_interval < 1:
            raise ValueError(f"check_interval must be >= 1, got {self.check_interval}")
        if self.check_history < 1:
            raise ValueError(f"check_history must be >= 1, got {self.check_history}")


@dataclass(frozen=True)
class FolderStatus:
    """Counts reported by the server when a folder is selected."""
    messages: int
    unseen: int


@dataclass(frozen=True)
class FetchedMessage:
    """
    Header-level view of one remote message.

    Fields:
        seq: Provider reference (IMAP UID, POP3 UIDL or message number)
        sender: Raw From header value (may include a display name)
        subject: Decoded subject
        message_id: Message-ID header value ('' when absent)
        size: Message size in octets when the protocol reports it
    """
    seq: str
    sender: str
    subject: str
    message_id: str = ""
    size: Optional[int] = None


@dataclass(frozen=True)
class AccountStatus:
    """Read-only status snapshot for display."""
    email: str
    protocol: Protocol
    unread_count: int
    last_check_time: Optional[datetime]
    running: bool = False
    history_size: int = 0


@dataclass
class PollResult:
    """
    Outcome of one poll cycle.

    Attributes:
        email: Account the cycle ran for
        ok: False when the cycle aborted (connection or secret-store failure)
        unread_count: Unread total observed (0 when the cycle aborted)
        notified: Number of notifications fired during the cycle
        skipped_folders: Folders skipped due to folder-level errors
        error: Error message when ok is False
    """
    email: str
    ok: bool
    unread_count: int = 0
    notified: int = 0
    skipped_folders: Tuple[str, ...] = ()
    error: Optional[str] = None


class AccountRuntime:
    """
    Mutable per-account runtime state.

    Every read and write goes through the lock. The lock is never held across
    network I/O: the poll cycle takes it only for membership checks, inserts
    and the final status update.

    cycle_lock serializes whole poll cycles for the account, so a manual
    check never overlaps a scheduled one. It is held across network I/O and
    never guards state reads.
    """

    def __init__(self, history: Optional[NotificationHistory] = None):
        self.lock = threading.Lock()
        self.cycle_lock = threading.Lock()
        self.history = history if history is not None else NotificationHistory()
        self.last_check_time: Optional[datetime] = None
        self.unread_count = 0

    def snapshot(self) -> 'RuntimeSnapshot':
        with self.lock:
            return RuntimeSnapshot(
                last_check_time=self.last_check_time,
                unread_count=self.unread_count,
                history_size=len(self.history),
            )


@dataclass(frozen=True)
class RuntimeSnapshot:
    last_check_time: Optional[datetime]
    unread_count: int
    history_size: int


class AccountHandle:
    """
    Stable reference to one account: current configuration plus runtime.

    The configuration may be swapped by the fleet controller while the
    account's supervisor is stopped; the runtime (history, status) survives
    the swap.
    """

    def __init__(self, config: AccountConfig, runtime: Optional[AccountRuntime] = None):
        self._config = config
        self.runtime = runtime if runtime is not None else AccountRuntime()

    @property
    def config(self) -> AccountConfig:
        return self._config

    @property
    def email(self) -> str:
        return self._config.email

    def replace_config(self, config: AccountConfig) -> None:
        if config.email != self._config.email:
            raise ValueError(
                f"Cannot change account identity from {self._config.email} to {config.email}"
            )
        self._config = config

    def __repr__(self) -> str:
        return f"AccountHandle(email={self.email!r}, protocol={self._config.protocol.value})"
