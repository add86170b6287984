"""
Tests for the fleet controller: registry, bulk operations and reconfiguration.
"""
import threading

import pytest

from mailwatch.fleet import FleetController, SupervisorStopError
from mailwatch.models import AccountConfig, PollResult
from mailwatch.secrets import SecretStoreError
from tests.fakes import FakeImapSession, make_account, make_message

WAIT = 5


class RecordingSaver:
    def __init__(self):
        self.saved = []

    def save(self, accounts):
        self.saved.append([a.email for a in accounts])


@pytest.fixture
def saver():
    return RecordingSaver()


@pytest.fixture
def fleet(executor, secret_store, history_store, saver, session_factory):
    session_factory.session = FakeImapSession({'INBOX': []})
    controller = FleetController(
        executor=executor,
        secret_store=secret_store,
        history_store=history_store,
        config_saver=saver,
        stop_timeout=WAIT,
    )
    yield controller
    controller.stop_all(timeout=WAIT)


def _account(email, **overrides):
    overrides.setdefault('check_interval', 3600)
    return make_account(email=email, **overrides)


class TestRegistry:
    def test_load_registers_without_starting(self, fleet):
        fleet.load([_account('me@example.com'), _account('b@example.com')])

        assert len(fleet) == 2
        assert fleet.emails() == ['me@example.com', 'b@example.com']
        assert not any(status.running for status in fleet.status())

    def test_load_duplicate_raises(self, fleet):
        with pytest.raises(ValueError):
            fleet.load([_account('me@example.com'), _account('me@example.com')])

    def test_load_with_duplicate_registers_nothing(self, fleet):
        with pytest.raises(ValueError):
            fleet.load([_account('a@example.com'), _account('me@example.com'), _account('me@example.com')])
        assert len(fleet) == 0

    def test_load_clashing_with_registered_account_adds_nothing(self, fleet):
        fleet.load([_account('me@example.com')])
        with pytest.raises(ValueError):
            fleet.load([_account('b@example.com'), _account('me@example.com')])
        assert fleet.emails() == ['me@example.com']

    def test_get_unknown_raises_key_error(self, fleet):
        with pytest.raises(KeyError):
            fleet.get('ghost@example.com')

    def test_history_is_loaded_and_capped_on_registration(self, fleet, history_store):
        history_store.save('me@example.com', [f'INBOX-{i}' for i in range(9)])

        fleet.load([_account('me@example.com', check_history=8)])

        assert fleet.get('me@example.com').runtime.history.to_list() == [
            'INBOX-5', 'INBOX-6', 'INBOX-7', 'INBOX-8'
        ]


class TestLifecycle:
    def test_start_and_stop_all(self, fleet):
        fleet.load([_account('me@example.com')])

        fleet.start_all()
        assert fleet.status()[0].running is True

        assert fleet.stop_all(timeout=WAIT) is True
        assert fleet.status()[0].running is False

    def test_restart_all_notifies(self, fleet, notifier):
        fleet.load([_account('me@example.com')])
        fleet.start_all()

        results = fleet.restart_all()

        assert results == {'me@example.com': True}
        assert ('Mail Watch', 'Monitors restarted', False) in notifier.calls

    def test_start_all_waits_for_reconfiguration(self, fleet):
        fleet.load([_account('me@example.com')])
        starter = threading.Thread(target=fleet.start_all)

        with fleet._admin_lock:
            starter.start()
            starter.join(0.2)
            assert starter.is_alive()
            assert fleet.status()[0].running is False

        starter.join(WAIT)
        assert fleet.status()[0].running is True


class TestCheckAll:
    def test_returns_result_per_account(self, fleet, secret_store, session_factory, notifier):
        secret_store.set('b@example.com', 'pw')
        session_factory.session = FakeImapSession({'INBOX': [make_message(1)]})
        fleet.load([_account('me@example.com'), _account('b@example.com')])

        results = fleet.check_all()

        assert set(results) == {'me@example.com', 'b@example.com'}
        assert all(result.ok for result in results.values())
        assert fleet.total_unread() == 2
        assert notifier.calls[-1] == ('Mail Watch', 'Manual check completed', False)

    def test_failure_is_isolated_to_its_account(self, fleet, executor, secret_store):
        secret_store.set('b@example.com', 'pw')

        def factory(config, password, timeout):
            if config.email == 'b@example.com':
                raise RuntimeError('unexpected')
            return FakeImapSession({'INBOX': [make_message(3)]})
        executor.session_factory = factory
        fleet.load([_account('me@example.com'), _account('b@example.com')])

        results = fleet.check_all()

        assert results['me@example.com'].ok is True
        assert results['b@example.com'].ok is False
        assert results['b@example.com'].error == 'unexpected'

    def test_missing_password_reports_failure(self, fleet):
        fleet.load([_account('nobody@example.com')])
        assert fleet.check_all()['nobody@example.com'].ok is False

    def test_empty_fleet(self, fleet):
        assert fleet.check_all() == {}


class TestClearHistory:
    def test_clears_memory_and_disk(self, fleet, history_store, notifier):
        history_store.save('me@example.com', ['INBOX-1'])
        fleet.load([_account('me@example.com')])

        fleet.clear_history_all()

        assert len(fleet.get('me@example.com').runtime.history) == 0
        assert history_store.load('me@example.com') == []
        assert notifier.calls[-1][1] == 'History cleared'


class TestAddAccount:
    def test_add_stores_password_and_persists(self, fleet, secret_store, saver):
        handle = fleet.add_account(_account('new@example.com'), 'pw')

        assert handle.email == 'new@example.com'
        assert secret_store.secrets['new@example.com'] == 'pw'
        assert saver.saved[-1] == ['new@example.com']
        assert fleet.status()[0].running is False

    def test_add_starts_when_fleet_is_running(self, fleet):
        fleet.start_all()
        fleet.add_account(_account('new@example.com'), 'pw')
        assert fleet.status()[0].running is True

    def test_add_duplicate_raises(self, fleet):
        fleet.load([_account('me@example.com')])
        with pytest.raises(ValueError):
            fleet.add_account(_account('me@example.com'), 'pw')

    def test_secret_failure_leaves_registry_unchanged(self, fleet, secret_store, saver):
        secret_store.fail_on.add('set')

        with pytest.raises(SecretStoreError):
            fleet.add_account(_account('new@example.com'), 'pw')

        assert len(fleet) == 0
        assert saver.saved == []


class TestUpdateAccount:
    def test_update_swaps_config_and_keeps_history(self, fleet, saver):
        fleet.load([_account('me@example.com')])
        handle = fleet.get('me@example.com')
        handle.runtime.history.add('INBOX-1')

        fleet.update_account('me@example.com', _account('me@example.com', server='imap.new.com'))

        assert fleet.get('me@example.com') is handle
        assert handle.config.server == 'imap.new.com'
        assert 'INBOX-1' in handle.runtime.history
        assert saver.saved[-1] == ['me@example.com']

    def test_update_restarts_running_supervisor(self, fleet, secret_store):
        fleet.load([_account('me@example.com')])
        fleet.start_all()

        fleet.update_account('me@example.com', _account('me@example.com'), password='new')

        assert secret_store.secrets['me@example.com'] == 'new'
        assert fleet.status()[0].running is True

    def test_password_failure_restores_previous_state(self, fleet, secret_store):
        fleet.load([_account('me@example.com')])
        fleet.start_all()
        secret_store.fail_on.add('set')

        with pytest.raises(SecretStoreError):
            fleet.update_account('me@example.com', _account('me@example.com', server='x'), password='new')

        assert fleet.get('me@example.com').config.server == 'mail.example.com'
        assert fleet.status()[0].running is True
        assert secret_store.secrets['me@example.com'] == 's3cret'

    def test_email_change_is_rejected(self, fleet):
        fleet.load([_account('me@example.com')])
        with pytest.raises(ValueError):
            fleet.update_account('me@example.com', _account('other@example.com'))

    def test_unknown_account(self, fleet):
        with pytest.raises(KeyError):
            fleet.update_account('ghost@example.com', _account('ghost@example.com'))


class TestRemoveAccount:
    def test_remove_deletes_secret_and_persists(self, fleet, secret_store, saver):
        fleet.load([_account('me@example.com'), _account('b@example.com')])
        fleet.start_all()

        fleet.remove_account('me@example.com')

        assert fleet.emails() == ['b@example.com']
        assert 'me@example.com' not in secret_store.secrets
        assert saver.saved[-1] == ['b@example.com']
        assert fleet.status()[0].running is True

    def test_secret_failure_keeps_account_running(self, fleet, secret_store):
        fleet.load([_account('me@example.com')])
        fleet.start_all()
        secret_store.fail_on.add('delete')

        with pytest.raises(SecretStoreError):
            fleet.remove_account('me@example.com')

        assert fleet.emails() == ['me@example.com']
        assert fleet.status()[0].running is True


def test_status_reports_protocol_and_history(fleet, history_store):
    history_store.save('me@example.com', ['INBOX-1', 'INBOX-2'])
    fleet.load([_account('me@example.com')])

    status = fleet.status()[0]

    assert isinstance(fleet.get('me@example.com').config, AccountConfig)
    assert status.email == 'me@example.com'
    assert status.history_size == 2
    assert status.unread_count == 0
    assert status.last_check_time is None


class BlockingExecutor:
    """Poll cycle stand-in that holds every cycle until release is set."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.notifier = None

    def run(self, handle, stop_event=None):
        self.entered.set()
        self.release.wait(WAIT)
        return PollResult(email=handle.email, ok=True)


class TestStopTimeout:
    @pytest.fixture
    def stuck(self, secret_store, history_store, saver, notifier):
        blocking = BlockingExecutor()
        controller = FleetController(
            executor=blocking,
            secret_store=secret_store,
            history_store=history_store,
            config_saver=saver,
            notifier=notifier,
            stop_timeout=0.2,
        )
        controller.load([_account('me@example.com')])
        controller.start_all()
        assert blocking.entered.wait(WAIT)
        yield controller
        blocking.release.set()
        controller.stop_all(timeout=WAIT)

    def test_remove_leaves_account_untouched(self, stuck, secret_store, saver):
        with pytest.raises(SupervisorStopError):
            stuck.remove_account('me@example.com')

        assert stuck.emails() == ['me@example.com']
        assert secret_store.secrets['me@example.com'] == 's3cret'
        assert saver.saved == []
        assert stuck.status()[0].running is True

    def test_update_leaves_account_untouched(self, stuck, secret_store, saver):
        with pytest.raises(SupervisorStopError):
            stuck.update_account('me@example.com', _account('me@example.com', server='x'), password='new')

        assert stuck.get('me@example.com').config.server == 'mail.example.com'
        assert secret_store.secrets['me@example.com'] == 's3cret'
        assert saver.saved == []
        assert stuck.status()[0].running is True
