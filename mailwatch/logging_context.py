"""
Logging context for account monitoring threads.

Stores the account being polled, the current poll cycle id and the folder
being scanned, so that ContextFilter (see logging_config) can attach them to
every log record emitted from a supervisor or fan-out worker thread.

Each supervisor runs in its own thread. New threads start with an empty
contextvars context, so context set inside one account's cycle never leaks
into another's. A thread-local copy is kept alongside for code that reads the
context outside the contextvars machinery.

Usage:
    >>> from mailwatch.logging_context import with_account_context
    >>> with with_account_context(account_id='me@example.com', cycle_id='a1b2c3d4'):
    ...     logger.info("Polling")
"""
import contextvars
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Optional

CONTEXT_FIELDS = ('account_id', 'cycle_id', 'folder')

_vars: Dict[str, contextvars.ContextVar] = {
    name: contextvars.ContextVar(name, default=None) for name in CONTEXT_FIELDS
}

_thread_local = threading.local()


def _get_thread_local_context() -> Dict[str, Any]:
    if not hasattr(_thread_local, 'context'):
        _thread_local.context = {}
    return _thread_local.context


def get_logging_context() -> Dict[str, Any]:
    """
    Return the fields set in the current context.

    Unset fields are omitted. contextvars values take precedence over the
    thread-local copy.
    """
    context = dict(_get_thread_local_context())
    for name, var in _vars.items():
        value = var.get()
        if value is not None:
            context[name] = value
    return context


def new_cycle_id() -> str:
    """Short random id correlating the log lines of one poll cycle."""
    return uuid.uuid4().hex[:8]


def set_account_context(
    account_id: Optional[str] = None,
    cycle_id: Optional[str] = None,
    folder: Optional[str] = None,
) -> None:
    """Set the given fields; None leaves a field unchanged."""
    values = {'account_id': account_id, 'cycle_id': cycle_id, 'folder': folder}
    local = _get_thread_local_context()
    for name, value in values.items():
        if value is None:
            continue
        _vars[name].set(value)
        local[name] = value


def set_folder(folder: Optional[str]) -> None:
    """Set or clear the folder currently being scanned."""
    _vars['folder'].set(folder)
    local = _get_thread_local_context()
    if folder is None:
        local.pop('folder', None)
    else:
        local['folder'] = folder


def clear_context() -> None:
    """Clear every context field in the current thread."""
    for var in _vars.values():
        var.set(None)
    if hasattr(_thread_local, 'context'):
        _thread_local.context.clear()


@contextmanager
def with_account_context(
    account_id: Optional[str] = None,
    cycle_id: Optional[str] = None,
    folder: Optional[str] = None,
):
    """
    Set context fields for the duration of a block.

    The previous context is restored on exit, including when the block raises.
    """
    old_context = get_logging_context()
    set_account_context(account_id=account_id, cycle_id=cycle_id, folder=folder)
    try:
        yield
    finally:
        clear_context()
        if old_context:
            set_account_context(**old_context)
