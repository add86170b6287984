"""
Notification output.

The engine talks to a Notifier: anything with notify(title, body, play_sound)
that raises NotificationError (or any exception) on failure. Two
implementations ship here:

    - ConsoleNotifier: prints the notification to the terminal with click,
      ringing the terminal bell when sound is enabled
    - LoggingNotifier: writes the notification to the log only
"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, TextIO

import click

logger = logging.getLogger(__name__)

APP_TITLE = "Mail Watch"
MAX_SUBJECT_DISPLAY = 50
NO_SUBJECT = "(No Subject)"
UNKNOWN_SENDER = "Unknown"


class NotificationError(Exception):
    """Raised when a notification cannot be delivered."""
    pass


class Notifier(Protocol):
    def notify(self, title: str, body: str, play_sound: bool) -> None: ...


@dataclass(frozen=True)
class Notification:
    """A formatted new-mail notification."""
    title: str
    body: str
    sender: str
    subject: str


def truncate_subject(subject: str, limit: int = MAX_SUBJECT_DISPLAY) -> str:
    """Shorten long subjects for display: more than 50 chars become 47 + '...'."""
    if len(subject) > limit:
        return subject[:limit - 3] + "..."
    return subject


def format_notification(account_email: str, location: str, sender: str, subject: str) -> Notification:
    """
    Build the title and body for a new-mail notification.

    Args:
        account_email: Account the message arrived in
        location: Folder name, or 'POP3' for inbox-only accounts
        sender: Bare sender address (falls back to 'Unknown' when empty)
        subject: Decoded subject (falls back to '(No Subject)' when empty)

    Returns:
        Notification with the display title/body plus the normalized sender
        and full subject for logging
    """
    sender = sender or UNKNOWN_SENDER
    subject = subject or NO_SUBJECT
    title = f"📧 {account_email} [{location}]"
    body = f"From: {sender}\nSubject: {truncate_subject(subject)}"
    return Notification(title=title, body=body, sender=sender, subject=subject)


class ConsoleNotifier:
    """
    Prints notifications to the terminal.

    Args:
        stream: Optional file object to write to (defaults to stdout)
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream

    def notify(self, title: str, body: str, play_sound: bool) -> None:
        try:
            click.echo(click.style(title, bold=True), file=self.stream)
            for line in body.splitlines():
                click.echo(f"  {line}", file=self.stream)
            if play_sound:
                click.echo("\a", file=self.stream, nl=False)
        except (OSError, ValueError) as e:
            raise NotificationError(f"Failed to write notification: {e}") from e


class LoggingNotifier:
    """Notifier that only logs. Useful for headless runs."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def notify(self, title: str, body: str, play_sound: bool) -> None:
        logger.log(self.level, f"{title} | {body.replace(chr(10), ' | ')}")
