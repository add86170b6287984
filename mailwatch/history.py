"""
Notification history: the per-account record of message identities that have
already produced a notification.

NotificationHistory is the in-memory set. It remembers insertion order so that
size-bounded cleanup evicts the oldest identities first. It is not thread-safe
on its own; callers hold the owning AccountRuntime lock.

HistoryStore persists one JSON file per account under a history directory:

    <history_dir>/<email with '@' replaced by '_at_'>.json

The file holds a JSON list of identities, oldest first. Saves go to a
temporary file in the same directory followed by os.replace, so a crash
mid-write leaves the previous file intact.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Iterator, List, Union

logger = logging.getLogger(__name__)


class HistoryStoreError(Exception):
    """Raised when a history file cannot be written."""
    pass


class NotificationHistory:
    """
    Insertion-ordered set of notified message identities.

    Example:
        >>> history = NotificationHistory(['a', 'b'])
        >>> history.add('c')
        True
        >>> 'a' in history
        True
        >>> history.cleanup(cap=2)
        2
        >>> list(history)
        ['c']
    """

    def __init__(self, identities: Iterable[str] = ()):
        # dict keeps insertion order; values are unused
        self._items = dict.fromkeys(identities)

    def __contains__(self, identity: object) -> bool:
        return identity in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def add(self, identity: str) -> bool:
        """Add an identity. Returns False if it was already present."""
        if identity in self._items:
            return False
        self._items[identity] = None
        return True

    def clear(self) -> None:
        self._items.clear()

    def replace(self, identities: Iterable[str]) -> None:
        """Bulk replace the whole set, keeping the given order."""
        self._items = dict.fromkeys(identities)

    def to_list(self) -> List[str]:
        return list(self._items)

    def cleanup(self, cap: int, keep: Iterable[str] = ()) -> int:
        """
        Evict the oldest identities when the set exceeds the cap.

        When len > cap, the oldest identities are evicted until at most
        cap // 2 remain. Identities in keep are never evicted, so the set may
        stay above cap // 2 when keep is large. Below the cap nothing happens.

        Args:
            cap: Maximum number of remembered identities
            keep: Identities that must survive, e.g. those seen by the
                current poll cycle and still unread on the server

        Returns:
            Number of identities evicted
        """
        if len(self._items) <= cap:
            return 0
        protected = set(keep)
        excess = len(self._items) - cap // 2
        evicted = 0
        for identity in list(self._items):
            if evicted >= excess:
                break
            if identity in protected:
                continue
            del self._items[identity]
            evicted += 1
        return evicted


def history_filename(account_key: str) -> str:
    """Map an account email to its history file name."""
    return account_key.replace("@", "_at_") + ".json"


class HistoryStore:
    """
    File-backed persistence for NotificationHistory, one file per account.

    Args:
        history_dir: Directory holding the per-account JSON files (created on first save)
    """

    def __init__(self, history_dir: Union[str, Path]):
        self.history_dir = Path(history_dir)

    def path_for(self, account_key: str) -> Path:
        return self.history_dir / history_filename(account_key)

    def load(self, account_key: str) -> List[str]:
        """
        Load the persisted identities for an account.

        A missing file is an empty history, not an error. An unreadable or
        malformed file is logged and treated as empty.

        Returns:
            List of identities in stored order (oldest first)
        """
        path = self.path_for(account_key)
        if not path.exists():
            logger.debug(f"No history file for {account_key} at {path}")
            return []

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[{account_key}] Could not read history file {path}: {e}. Starting empty.")
            return []

        if not isinstance(data, list):
            logger.warning(
                f"[{account_key}] History file {path} root must be a list, "
                f"got {type(data).__name__}. Starting empty."
            )
            return []

        identities = [str(item) for item in data]
        logger.debug(f"[{account_key}] Loaded {len(identities)} history entries")
        return identities

    def save(self, account_key: str, identities: Iterable[str]) -> None:
        """
        Atomically overwrite an account's history file.

        Raises:
            HistoryStoreError: If the directory or file cannot be written
        """
        path = self.path_for(account_key)
        payload = list(identities)

        try:
            self.history_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=path.name + ".", suffix=".tmp", dir=str(self.history_dir)
            )
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(payload, f, indent=2, ensure_ascii=False)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise HistoryStoreError(f"Failed to save history for {account_key} to {path}: {e}") from e

        logger.debug(f"[{account_key}] Saved {len(payload)} history entries to {path}")
