"""
Fleet Controller

Owns every monitored account and its supervisor. The registry maps account
email to an (AccountHandle, AccountSupervisor) pair; handles are stable
references, so adding or removing one account never disturbs another's
running supervisor.

Locking:
    - _registry_lock guards the registry dict only. It is held for lookups,
      inserts, deletes and snapshots, never across network I/O, file I/O or
      thread joins.
    - _admin_lock serializes add/update/remove so two reconfigurations of the
      fleet cannot interleave. Status reads never take it.

Bulk operations (check-all, restart-all) fan out on a thread pool, one task
per account; one account's failure is recorded in its own result and never
affects another.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from mailwatch.history import HistoryStore, HistoryStoreError, NotificationHistory
from mailwatch.models import AccountConfig, AccountHandle, AccountRuntime, AccountStatus, PollResult
from mailwatch.notifier import APP_TITLE, Notifier
from mailwatch.poll_cycle import PollCycleExecutor
from mailwatch.secrets import SecretStore, SecretStoreError
from mailwatch.supervisor import AccountSupervisor

logger = logging.getLogger(__name__)

MAX_WORKERS = 8
DEFAULT_STOP_TIMEOUT = 60.0


class SupervisorStopError(RuntimeError):
    """Raised when an account's supervisor does not stop in time for a reconfiguration."""
    pass


class ConfigSaver(Protocol):
    def save(self, accounts: Sequence[AccountConfig]) -> None: ...


@dataclass
class _Entry:
    handle: AccountHandle
    supervisor: AccountSupervisor


class FleetController:
    """
    Manages the set of monitored accounts.

    Args:
        executor: Poll cycle executor shared by all supervisors
        secret_store: Where account passwords are stored on add/update/remove
        history_store: Loads and saves notification histories
        config_saver: Persists the account list after add/update/remove
            (e.g. ConfigLoader). None disables persistence.
        notifier: Receives the fleet-level status notifications
        stop_timeout: Seconds to wait for a supervisor to stop
    """

    def __init__(
        self,
        executor: PollCycleExecutor,
        secret_store: SecretStore,
        history_store: HistoryStore,
        config_saver: Optional[ConfigSaver] = None,
        notifier: Optional[Notifier] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
    ):
        self.executor = executor
        self.secret_store = secret_store
        self.history_store = history_store
        self.config_saver = config_saver
        self.notifier = notifier if notifier is not None else executor.notifier
        self.stop_timeout = stop_timeout
        self._registry: Dict[str, _Entry] = {}
        self._registry_lock = threading.Lock()
        self._admin_lock = threading.RLock()
        self._started = False

    # -- registry helpers -------------------------------------------------

    def _new_entry(self, config: AccountConfig) -> _Entry:
        identities = self.history_store.load(config.email)
        runtime = AccountRuntime(NotificationHistory(identities))
        with runtime.lock:
            runtime.history.cleanup(config.check_history)
        handle = AccountHandle(config, runtime)
        supervisor = AccountSupervisor(handle, self.executor)
        return _Entry(handle=handle, supervisor=supervisor)

    def _entries(self) -> List[_Entry]:
        with self._registry_lock:
            return list(self._registry.values())

    def _entry(self, email: str) -> _Entry:
        with self._registry_lock:
            entry = self._registry.get(email)
        if entry is None:
            raise KeyError(f"Unknown account: {email}")
        return entry

    def _persist(self) -> None:
        if self.config_saver is None:
            return
        configs = [entry.handle.config for entry in self._entries()]
        self.config_saver.save(configs)

    def _stop_confirmed(self, entry: _Entry, was_running: bool) -> None:
        """
        Stop and join an account's supervisor before reconfiguring it.

        Raises:
            SupervisorStopError: If the thread is still running after
                stop_timeout. The stop request is withdrawn first.
        """
        if entry.supervisor.stop(wait=True, timeout=self.stop_timeout):
            return
        if was_running:
            entry.supervisor.resume()
        raise SupervisorStopError(
            f"Supervisor for {entry.handle.email} did not stop within {self.stop_timeout}s; account left unchanged"
        )

    def _notify(self, message: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(APP_TITLE, message, False)
        except Exception as e:
            logger.error(f"Notification error: {e}")

    def load(self, accounts: Iterable[AccountConfig]) -> None:
        """
        Register accounts without starting them.

        Either every account is registered or none is.

        Raises:
            ValueError: If an email is already registered or appears twice
        """
        configs = list(accounts)
        with self._admin_lock:
            emails = [config.email for config in configs]
            with self._registry_lock:
                taken = set(self._registry)
            for email in emails:
                if email in taken:
                    raise ValueError(f"Account already registered: {email}")
                taken.add(email)

            entries = [self._new_entry(config) for config in configs]
            with self._registry_lock:
                for entry in entries:
                    self._registry[entry.handle.email] = entry
        logger.info(f"Registered {len(self)} account(s)")

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._registry)

    def emails(self) -> List[str]:
        with self._registry_lock:
            return list(self._registry)

    def get(self, email: str) -> AccountHandle:
        """
        Return the handle of a registered account.

        Raises:
            KeyError: If the account is not registered
        """
        return self._entry(email).handle

    # -- lifecycle ---------------------------------------------------------

    def start_all(self) -> None:
        """Start every registered supervisor. Already running ones are left alone."""
        with self._admin_lock:
            self._started = True
            for entry in self._entries():
                entry.supervisor.start()
        logger.info(f"Monitoring {len(self)} account(s)")

    def stop_all(self, timeout: Optional[float] = None) -> bool:
        """
        Stop every supervisor.

        All stop signals are sent first, then each thread is joined, so the
        overall wait is bounded by the slowest account rather than the sum.

        Returns:
            True if every supervisor stopped within the timeout
        """
        timeout = self.stop_timeout if timeout is None else timeout
        with self._admin_lock:
            self._started = False
            entries = self._entries()
        for entry in entries:
            entry.supervisor.stop(wait=False)
        stopped = [entry.supervisor.stop(wait=True, timeout=timeout) for entry in entries]
        logger.info(f"Stopped {sum(stopped)}/{len(entries)} supervisor(s)")
        return all(stopped)

    def restart_all(self) -> Dict[str, bool]:
        """
        Restart every supervisor in parallel.

        Returns:
            Mapping of account email to whether its restart succeeded
        """
        with self._admin_lock:
            self._started = True
            entries = self._entries()
        results: Dict[str, bool] = {}
        if entries:
            with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(entries)),
                                    thread_name_prefix="mailwatch-restart") as pool:
                futures = {
                    entry.handle.email: pool.submit(entry.supervisor.restart, self.stop_timeout)
                    for entry in entries
                }
                for email, future in futures.items():
                    try:
                        results[email] = future.result()
                    except Exception as e:
                        logger.error(f"[{email}] Restart failed: {e}")
                        results[email] = False
        self._notify("Monitors restarted")
        return results

    # -- bulk operations ---------------------------------------------------

    def _check_one(self, handle: AccountHandle) -> PollResult:
        try:
            return self.executor.run(handle)
        except Exception as e:
            logger.exception(f"[{handle.email}] Check failed: {e}")
            return PollResult(email=handle.email, ok=False, error=str(e))

    def check_all(self) -> Dict[str, PollResult]:
        """
        Run one poll cycle for every account now, in parallel, and wait for all.

        A cycle already running for an account (from its supervisor) finishes
        first; cycles for one account never overlap.

        Returns:
            Mapping of account email to its PollResult, in registry order
        """
        handles = [entry.handle for entry in self._entries()]
        results: Dict[str, PollResult] = {}
        if handles:
            with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(handles)),
                                    thread_name_prefix="mailwatch-check") as pool:
                futures = {handle.email: pool.submit(self._check_one, handle) for handle in handles}
                for email, future in futures.items():
                    results[email] = future.result()
        logger.info(
            f"Manual check completed: {sum(1 for r in results.values() if r.ok)}/{len(results)} account(s) ok"
        )
        self._notify("Manual check completed")
        return results

    def clear_history_all(self) -> None:
        """Forget every notified identity for every account and persist the empty histories."""
        for entry in self._entries():
            runtime = entry.handle.runtime
            with runtime.lock:
                runtime.history.clear()
            try:
                self.history_store.save(entry.handle.email, [])
            except HistoryStoreError as e:
                logger.warning(f"[{entry.handle.email}] {e}")
        logger.info("Notification history cleared for all accounts")
        self._notify("History cleared")

    # -- reconfiguration ---------------------------------------------------

    def add_account(self, config: AccountConfig, password: str) -> AccountHandle:
        """
        Register a new account, store its password and start monitoring it.

        The password is stored first; if that fails nothing else changes.

        Raises:
            ValueError: If the email is already registered
            SecretStoreError: If the password cannot be stored
            ConfigurationError: If the account list cannot be persisted
        """
        with self._admin_lock:
            with self._registry_lock:
                if config.email in self._registry:
                    raise ValueError(f"Account already exists: {config.email}")

            self.secret_store.set(config.email, password)

            entry = self._new_entry(config)
            with self._registry_lock:
                self._registry[config.email] = entry

            if self._started:
                entry.supervisor.start()
            logger.info(f"[{config.email}] Account added")
            self._persist()
            return entry.handle

    def update_account(self, email: str, config: AccountConfig, password: Optional[str] = None) -> AccountHandle:
        """
        Replace an account's configuration, optionally with a new password.

        The supervisor is stopped and joined before anything changes. If the
        password cannot be stored, the account resumes with its old
        configuration and the error is re-raised. The runtime (history and
        status) survives the swap.

        Raises:
            KeyError: If the account is not registered
            ValueError: If the new configuration has a different email
            SecretStoreError: If the password cannot be stored
            SupervisorStopError: If the supervisor does not stop within stop_timeout
        """
        if config.email != email:
            raise ValueError(f"Cannot change account email from {email} to {config.email}")

        with self._admin_lock:
            entry = self._entry(email)
            was_running = entry.supervisor.is_running()
            self._stop_confirmed(entry, was_running)

            if password:
                try:
                    self.secret_store.set(email, password)
                except SecretStoreError:
                    if was_running:
                        entry.supervisor.start()
                    raise

            entry.handle.replace_config(config)
            if was_running:
                entry.supervisor.start()
            logger.info(f"[{email}] Account updated")
            self._persist()
            return entry.handle

    def remove_account(self, email: str) -> None:
        """
        Stop monitoring an account and delete its stored password.

        If the password cannot be deleted the account keeps running and the
        error is re-raised. The history file is left on disk.

        Raises:
            KeyError: If the account is not registered
            SecretStoreError: If the password cannot be deleted
            SupervisorStopError: If the supervisor does not stop within stop_timeout
        """
        with self._admin_lock:
            entry = self._entry(email)
            was_running = entry.supervisor.is_running()
            self._stop_confirmed(entry, was_running)

            try:
                self.secret_store.delete(email)
            except SecretStoreError:
                if was_running:
                    entry.supervisor.start()
                raise

            with self._registry_lock:
                del self._registry[email]
            logger.info(f"[{email}] Account removed")
            self._persist()

    # -- status ------------------------------------------------------------

    def status(self) -> List[AccountStatus]:
        """Snapshot of every account, in registry order."""
        statuses = []
        for entry in self._entries():
            config = entry.handle.config
            snapshot = entry.handle.runtime.snapshot()
            statuses.append(AccountStatus(
                email=config.email,
                protocol=config.protocol,
                unread_count=snapshot.unread_count,
                last_check_time=snapshot.last_check_time,
                running=entry.supervisor.is_running(),
                history_size=snapshot.history_size,
            ))
        return statuses

    def total_unread(self) -> int:
        return sum(status.unread_count for status in self.status())
