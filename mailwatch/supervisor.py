"""
Account Supervisor

One daemon thread per account. The thread runs an immediate poll cycle, then
waits out the account's check interval on a stop Event and polls again:

    STOPPED --start()--> RUNNING --stop()--> STOPPED

Event.wait returns as soon as stop() sets the event, and the event is also
handed to the poll cycle, so a stop request is honored between folders and
between messages instead of only at the next interval.

A stop that times out leaves the thread inside its cycle. resume() withdraws
the request as long as the thread has not yet committed to exiting; that
decision is taken under the supervisor lock.
"""
import logging
import threading
from typing import Optional

from mailwatch.logging_context import with_account_context
from mailwatch.models import AccountHandle
from mailwatch.poll_cycle import PollCycleExecutor

logger = logging.getLogger(__name__)


class AccountSupervisor:
    """
    Owns the polling thread of one account.

    Args:
        handle: The account to poll
        executor: Runs the individual poll cycles
    """

    def __init__(
        self,
        handle: AccountHandle,
        executor: PollCycleExecutor,
    ):
        self.handle = handle
        self.executor = executor
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        # Set under _lock once the thread has committed to exiting
        self._exiting = False

    @property
    def email(self) -> str:
        return self.handle.email

    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """
        Start the polling thread.

        Returns:
            False if the supervisor was already running, True otherwise
        """
        with self._lock:
            previous = self._thread
            if previous is not None and previous.is_alive() and not self._exiting:
                logger.debug(f"[{self.email}] Supervisor already running")
                return False

        if previous is not None and previous.is_alive():
            # Already past its last stop check; only unwinding remains
            previous.join()

        with self._lock:
            if self._thread is not previous:
                return False
            self._exiting = False
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name=f"mailwatch-{self.email}",
                daemon=True,
            )
            self._thread.start()

        logger.info(
            f"[{self.email}] Monitoring started ({self.handle.config.protocol.value}, "
            f"every {self.handle.config.check_interval}s)"
        )
        return True

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Signal the polling thread to stop.

        Args:
            wait: Join the thread before returning
            timeout: Maximum seconds to wait for the join (None waits forever)

        Returns:
            True if the thread is no longer running
        """
        with self._lock:
            thread = self._thread
            self._stop_event.set()

        if thread is None:
            return True

        if wait and thread is not threading.current_thread():
            thread.join(timeout)

        stopped = not thread.is_alive()
        if stopped:
            with self._lock:
                if self._thread is thread:
                    self._thread = None
            logger.info(f"[{self.email}] Monitoring stopped")
        elif wait:
            logger.warning(f"[{self.email}] Supervisor did not stop within {timeout}s")
        return stopped

    def restart(self, timeout: Optional[float] = None) -> bool:
        """Stop, wait for the thread to exit, then start again."""
        if not self.stop(wait=True, timeout=timeout):
            return False
        return self.start()

    def resume(self) -> bool:
        """
        Withdraw a stop request that has not taken effect yet.

        Used after stop() timed out: the thread is still inside a poll cycle
        and keeps polling on its interval once the cycle returns. If the
        thread has already exited (or is exiting) a fresh one is started.

        Returns:
            True if the supervisor is running afterwards
        """
        with self._lock:
            thread = self._thread
            if thread is not None and thread.is_alive() and not self._exiting:
                self._stop_event.clear()
                logger.info(f"[{self.email}] Stop request withdrawn, monitoring continues")
                return True
        return self.start()

    def _should_exit(self, stop_event: threading.Event) -> bool:
        with self._lock:
            if stop_event.is_set():
                if stop_event is self._stop_event:
                    self._exiting = True
                return True
            return False

    def _run(self, stop_event: threading.Event) -> None:
        with with_account_context(account_id=self.email):
            while not self._should_exit(stop_event):
                try:
                    self.executor.run(self.handle, stop_event)
                except Exception as e:
                    logger.exception(f"[{self.email}] Unexpected error in poll cycle: {e}")

                stop_event.wait(self.handle.config.check_interval)
