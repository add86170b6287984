"""
Poll Cycle Executor

One poll cycle performs a full check of one account:

    1. Read the password from the secret store (never cached)
    2. Connect and authenticate
    3. IMAP: resolve folders, then per folder select read-only, count unseen,
       search unseen UIDs and fetch their headers
       POP3: STAT for the message count, then enumerate every message
    4. Per message: build its identity, skip it if already notified, run the
       filter, notify and record the identity
    5. Update unread count and last-check time, evict old history entries the
       cycle did not see and persist the history if anything new was recorded

Failure scopes:
    - Secret store or connection failure aborts the cycle; runtime status is
      left untouched and the result carries the error.
    - A folder that cannot be selected or fetched is logged and skipped.
    - A POP3 message that cannot be retrieved is logged and skipped.
    - A notifier failure is logged and the identity is still recorded, so a
      broken notifier does not re-fire on every cycle.
    - A history save failure is logged; the in-memory history is kept.

The executor is stateless apart from its collaborators and can be shared by
every supervisor. Cycles for the same account are serialized on the account's
cycle lock, and each cycle reads the account configuration once.
"""
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional, Set

from mailwatch.folders import resolve_folders
from mailwatch.history import HistoryStore, HistoryStoreError
from mailwatch.identity import build_identity, content_digest, extract_email_address
from mailwatch.logging_context import new_cycle_id, set_folder, with_account_context
from mailwatch.mail_session import (
    DEFAULT_TIMEOUT,
    MailConnectionError,
    MailFetchError,
    MailFolderError,
    MailSession,
    create_session,
)
from mailwatch.models import AccountConfig, AccountHandle, FetchedMessage, PollResult, Protocol
from mailwatch.notifier import Notifier, format_notification
from mailwatch.rules import should_notify
from mailwatch.secrets import SecretStore, SecretStoreError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[AccountConfig, str, float], MailSession]

POP3_LOCATION = "POP3"


class CycleStopped(Exception):
    """Raised internally when the stop event is set mid-cycle."""
    pass


class PollCycleExecutor:
    """
    Runs poll cycles against injected collaborators.

    Args:
        secret_store: Source of account passwords, keyed by account email
        notifier: Receives one notify() call per accepted new message
        history_store: Persists notification histories
        session_factory: Opens an authenticated session for an account
            (defaults to mail_session.create_session)
        timeout: Socket timeout in seconds for every network call
    """

    def __init__(
        self,
        secret_store: SecretStore,
        notifier: Notifier,
        history_store: HistoryStore,
        session_factory: Optional[SessionFactory] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.secret_store = secret_store
        self.notifier = notifier
        self.history_store = history_store
        self.session_factory = session_factory or create_session
        self.timeout = timeout

    def run(self, handle: AccountHandle, stop_event: Optional[threading.Event] = None) -> PollResult:
        """
        Run one poll cycle for an account.

        Args:
            handle: The account to check
            stop_event: Optional stop signal, checked between folders and
                between messages

        Returns:
            PollResult describing the cycle. Never raises for connection,
            secret-store, folder or message failures.
        """
        with handle.runtime.cycle_lock, with_account_context(account_id=handle.email, cycle_id=new_cycle_id()):
            return self._run_locked(handle, stop_event)

    def _run_locked(self, handle: AccountHandle, stop_event: Optional[threading.Event]) -> PollResult:
        config = handle.config
        email = config.email
        logger.debug(f"[{email}] Starting poll cycle ({config.protocol.value})")

        try:
            password = self.secret_store.get(email)
        except SecretStoreError as e:
            logger.error(f"[{email}] Cannot read password: {e}")
            return PollResult(email=email, ok=False, error=str(e))

        try:
            session = self.session_factory(config, password, self.timeout)
        except MailConnectionError as e:
            logger.error(f"[{email}] Connection failed: {e}")
            return PollResult(email=email, ok=False, error=str(e))

        result = PollResult(email=email, ok=True)
        seen: Set[str] = set()
        try:
            if config.protocol.is_folder_capable:
                self._poll_folders(handle, config, session, result, seen, stop_event)
            else:
                self._poll_inbox(handle, config, session, result, seen, stop_event)
        except CycleStopped:
            logger.info(f"[{email}] Poll cycle interrupted by stop request")
            result.ok = False
            result.error = "stopped"
        except MailFolderError as e:
            logger.error(f"[{email}] Cannot list folders: {e}")
            result.ok = False
            result.error = str(e)
        except MailFetchError as e:
            logger.error(f"[{email}] Cannot read mailbox: {e}")
            result.ok = False
            result.error = str(e)
        finally:
            session.close()
            set_folder(None)

        self._finish(handle, config, result, seen)
        return result

    def _check_stop(self, stop_event: Optional[threading.Event]) -> None:
        if stop_event is not None and stop_event.is_set():
            raise CycleStopped()

    def _poll_folders(self, handle, config, session, result: PollResult, seen, stop_event) -> None:
        live_folders = session.list_folders()
        folders = resolve_folders(config.folders, live_folders)
        logger.debug(f"[{config.email}] Scanning {len(folders)} folder(s)")

        total_unseen = 0
        skipped: List[str] = []
        for folder in folders:
            self._check_stop(stop_event)
            set_folder(folder)
            try:
                status = session.select_folder(folder)
                total_unseen += status.unseen
                if status.messages == 0:
                    continue
                uids = session.search_unseen()
                for message in session.fetch(uids):
                    self._check_stop(stop_event)
                    if self._process_message(handle, config, folder, message, seen):
                        result.notified += 1
            except (MailFolderError, MailFetchError) as e:
                logger.warning(f"[{config.email}][{folder}] Skipping folder: {e}")
                skipped.append(folder)

        result.unread_count = total_unseen
        result.skipped_folders = tuple(skipped)

    def _poll_inbox(self, handle, config, session, result: PollResult, seen, stop_event) -> None:
        count = session.stat()
        result.unread_count = count
        if count == 0:
            return
        for message in session.fetch_all(count):
            self._check_stop(stop_event)
            if self._process_message(handle, config, None, message, seen):
                result.notified += 1

    def _process_message(
        self,
        handle: AccountHandle,
        config: AccountConfig,
        folder: Optional[str],
        message: FetchedMessage,
        seen: Set[str],
    ) -> bool:
        """Dedup, filter and notify one message. Returns True if a notification fired."""
        runtime = handle.runtime

        content_key = None
        if config.protocol is Protocol.POP3 and not message.message_id:
            content_key = content_digest(message.sender, message.subject, message.size)
        identity = build_identity(config.protocol, folder, message.seq, message.message_id, content_key)
        seen.add(identity)

        with runtime.lock:
            if identity in runtime.history:
                return False

        sender_address = extract_email_address(message.sender)
        if not should_notify(config.filters, sender_address, message.subject):
            logger.debug(f"[{config.email}] Filtered out message {identity}")
            return False

        location = folder if folder is not None else POP3_LOCATION
        notification = format_notification(
            config.email, location, sender_address or message.sender.strip(), message.subject
        )
        try:
            self.notifier.notify(notification.title, notification.body, config.enable_notification_sound)
        except Exception as e:
            logger.error(f"[{config.email}] Notification error: {e}")

        logger.info(
            f"[{config.email}][{location}] NEW EMAIL - From: {notification.sender} | Subject: {notification.subject}"
        )

        with runtime.lock:
            runtime.history.add(identity)
        return True

    def _finish(self, handle: AccountHandle, config: AccountConfig, result: PollResult, seen: Set[str]) -> None:
        runtime = handle.runtime

        with runtime.lock:
            if result.ok:
                runtime.last_check_time = datetime.now()
                runtime.unread_count = result.unread_count
            evicted = runtime.history.cleanup(config.check_history, keep=seen)
            pending = runtime.history.to_list() if result.notified else None

        if evicted:
            logger.info(f"[{config.email}] Evicted {evicted} old history entries (cap {config.check_history})")

        if pending is not None:
            try:
                self.history_store.save(config.email, pending)
            except HistoryStoreError as e:
                logger.warning(f"[{config.email}] {e}. Keeping history in memory.")

        if result.ok:
            logger.info(
                f"[{config.email}] Check complete: {result.unread_count} unread, "
                f"{result.notified} new notification(s)"
            )
