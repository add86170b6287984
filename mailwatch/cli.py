"""
Command-line interface for mail-watch.

CLI Structure:
    mail-watch run
    mail-watch check
    mail-watch folders EMAIL
    mail-watch test-connection EMAIL
    mail-watch clear-history
    mail-watch show-config
    mail-watch set-password EMAIL

Global options --config-dir and --log-level apply to every command. The
config directory defaults to the per-user application directory.
"""
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

import click
import yaml

from mailwatch import __version__
from mailwatch.config_loader import (
    ConfigLoader,
    ConfigurationError,
    account_to_dict,
    get_app_dir,
)
from mailwatch.fleet import FleetController
from mailwatch.history import HistoryStore
from mailwatch.logging_config import init_logging
from mailwatch.mail_session import (
    DEFAULT_TIMEOUT,
    MailSessionError,
    check_connection,
    list_remote_folders,
)
from mailwatch.models import AccountConfig
from mailwatch.notifier import ConsoleNotifier
from mailwatch.poll_cycle import PollCycleExecutor
from mailwatch.secrets import EnvSecretStore, SecretNotFoundError, SecretStoreError

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name='mail-watch')
@click.option(
    '--config-dir',
    type=click.Path(path_type=Path, file_okay=False, dir_okay=True),
    default=None,
    help='Directory holding config.yaml, .env and history (default: per-user app directory)'
)
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    default='INFO',
    help='Set logging level (default: INFO)'
)
@click.option(
    '--timeout',
    type=click.FloatRange(min=1),
    default=DEFAULT_TIMEOUT,
    show_default=True,
    help='Network timeout in seconds for mail server connections'
)
@click.pass_context
def cli(ctx: click.Context, config_dir: Optional[Path], log_level: str, timeout: float):
    """
    Mail Watch: new-mail notifications for IMAP and POP3 accounts.

    Polls every configured mailbox on its own interval and notifies once per
    new message that passes the account's filters.
    """
    ctx.ensure_object(dict)

    try:
        base_dir = config_dir if config_dir is not None else get_app_dir()
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    loader = ConfigLoader(base_dir)
    loader.load_environment()

    ctx.obj['config_loader'] = loader
    ctx.obj['secret_store'] = EnvSecretStore(loader.env_path)
    ctx.obj['timeout'] = timeout

    try:
        init_logging(log_file=loader.log_path, overrides={'level': log_level.upper()})
    except OSError as e:
        click.echo(f"Warning: Could not initialize logging: {e}", err=True)
    logger.debug(f"Application directory: {base_dir}")


def _load_accounts(ctx: click.Context) -> List[AccountConfig]:
    """Load accounts or exit with status 1 on a configuration error."""
    loader: ConfigLoader = ctx.obj['config_loader']
    try:
        return loader.load(secret_store=ctx.obj['secret_store'])
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


def _find_account(ctx: click.Context, email: str) -> AccountConfig:
    for account in _load_accounts(ctx):
        if account.email.lower() == email.lower():
            return account
    click.echo(f"Error: No account configured for {email}", err=True)
    sys.exit(1)


def _get_password(ctx: click.Context, account: AccountConfig) -> str:
    try:
        return ctx.obj['secret_store'].get(account.email)
    except SecretNotFoundError:
        click.echo(
            f"Error: No password stored for {account.email}. "
            f"Run: mail-watch set-password {account.email}",
            err=True
        )
        sys.exit(1)
    except SecretStoreError as e:
        click.echo(f"Error: Cannot read password for {account.email}: {e}", err=True)
        sys.exit(1)


def _build_fleet(ctx: click.Context) -> FleetController:
    """Wire the engine: secret store, notifier, history store, executor and fleet."""
    accounts = _load_accounts(ctx)
    loader: ConfigLoader = ctx.obj['config_loader']
    secret_store = ctx.obj['secret_store']
    history_store = HistoryStore(loader.history_dir)
    notifier = ConsoleNotifier()

    executor = PollCycleExecutor(
        secret_store=secret_store,
        notifier=notifier,
        history_store=history_store,
        timeout=ctx.obj['timeout'],
    )
    fleet = FleetController(
        executor=executor,
        secret_store=secret_store,
        history_store=history_store,
        config_saver=loader,
        notifier=notifier,
    )
    fleet.load(accounts)
    return fleet


@cli.command()
@click.pass_context
def run(ctx: click.Context):
    """
    Monitor all accounts until interrupted (Ctrl+C or SIGTERM).
    """
    fleet = _build_fleet(ctx)
    stop_requested = threading.Event()

    def _handle_signal(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, shutting down...")
        stop_requested.set()

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, 'SIGTERM'):
        signal.signal(signal.SIGTERM, _handle_signal)

    click.echo(f"📧 Mail Watch: monitoring {len(fleet)} account(s). Press Ctrl+C to stop.")
    fleet.start_all()
    try:
        while not stop_requested.wait(1.0):
            pass
    finally:
        if not fleet.stop_all():
            logger.warning("Some supervisors did not stop in time")
    click.echo("Stopped.")


@cli.command()
@click.pass_context
def check(ctx: click.Context):
    """
    Check every account once and print a summary.
    """
    fleet = _build_fleet(ctx)
    results = fleet.check_all()

    click.echo("\n" + "=" * 70)
    click.echo("Check Summary")
    click.echo("=" * 70)
    failed = 0
    for email, result in results.items():
        if result.ok:
            line = f"  ✓ {email}: {result.unread_count} unread, {result.notified} new"
            if result.skipped_folders:
                line += f" (skipped: {', '.join(result.skipped_folders)})"
            click.echo(line)
        else:
            failed += 1
            click.echo(f"  ✗ {email}: {result.error}", err=True)
    click.echo(f"Total unread: {fleet.total_unread()}")
    click.echo("=" * 70)

    if failed:
        sys.exit(1)


@cli.command()
@click.argument('email')
@click.pass_context
def folders(ctx: click.Context, email: str):
    """
    List the folders available on an account's server.
    """
    account = _find_account(ctx, email)
    password = _get_password(ctx, account)
    try:
        names = list_remote_folders(account, password, ctx.obj['timeout'])
    except MailSessionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Folders for {account.email}:")
    for name in names:
        click.echo(f"  {name}")


@cli.command('test-connection')
@click.argument('email')
@click.pass_context
def test_connection(ctx: click.Context, email: str):
    """
    Connect and log in to an account's server.
    """
    account = _find_account(ctx, email)
    password = _get_password(ctx, account)
    try:
        check_connection(account, password, ctx.obj['timeout'])
    except MailSessionError as e:
        click.echo(f"✗ Connection failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Connection successful ({account.protocol.value.upper()} {account.server}:{account.port})")


@cli.command('clear-history')
@click.confirmation_option(prompt='Forget all notified messages for every account?')
@click.pass_context
def clear_history(ctx: click.Context):
    """
    Clear the notification history of every account.

    Messages still unread on the server will notify again on the next check.
    """
    fleet = _build_fleet(ctx)
    fleet.clear_history_all()
    click.echo(f"History cleared for {len(fleet)} account(s).")


@cli.command('show-config')
@click.pass_context
def show_config(ctx: click.Context):
    """
    Display the configured accounts (passwords are never shown).
    """
    accounts = _load_accounts(ctx)
    loader: ConfigLoader = ctx.obj['config_loader']
    secret_store = ctx.obj['secret_store']

    click.echo(f"\nConfiguration: {loader.config_path}")
    click.echo("=" * 70)
    for account in accounts:
        try:
            secret_store.get(account.email)
            password_state = 'stored'
        except SecretNotFoundError:
            password_state = 'missing'
        except SecretStoreError as e:
            password_state = f'unreadable ({e})'
        click.echo(yaml.safe_dump([account_to_dict(account)], default_flow_style=False, sort_keys=False).rstrip())
        click.echo(f"  # password: {password_state}")
    click.echo("=" * 70)


@cli.command('set-password')
@click.argument('email')
@click.password_option(help='Password (prompted for when omitted)')
@click.pass_context
def set_password(ctx: click.Context, email: str, password: str):
    """
    Store the password for a configured account.
    """
    account = _find_account(ctx, email)
    try:
        ctx.obj['secret_store'].set(account.email, password)
    except SecretStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Password stored for {account.email}.")


if __name__ == '__main__':
    cli()
