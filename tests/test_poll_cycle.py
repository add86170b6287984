"""
Tests for the poll cycle executor.

Sessions, secret store and notifier are in-memory fakes, except where a real
session adapter runs over a mocked imaplib or poplib. The history store
writes to tmp_path.
"""
import threading
from unittest.mock import MagicMock, patch

from mailwatch.history import HistoryStoreError, NotificationHistory
from mailwatch.mail_session import ImapSession, MailConnectionError, Pop3Session
from mailwatch.models import AccountHandle, AccountRuntime, FilterPolicy, FolderMode, FolderPolicy, Protocol
from tests.fakes import FakeImapSession, FakePop3Session, make_account, make_message


class TestImapCycle:
    def test_notifies_new_messages_and_records_them(self, executor, handle, session_factory, notifier, history_store):
        session_factory.session = FakeImapSession({
            'INBOX': [make_message(1, 'Jane <jane@example.com>', 'Hi', '<m1@x>')],
            'Work': [make_message(7, 'boss@co.com', 'Report')],
        })

        result = executor.run(handle)

        assert result.ok is True
        assert result.notified == 2
        assert result.unread_count == 2
        assert notifier.calls[0] == (
            '📧 me@example.com [INBOX]', 'From: jane@example.com\nSubject: Hi', True
        )
        assert notifier.titles[1] == '📧 me@example.com [Work]'
        assert history_store.load('me@example.com') == ['INBOX-1-<m1@x>', 'Work-7']
        assert session_factory.calls == [('me@example.com', 's3cret', 5)]
        assert session_factory.session.closed is True

    def test_second_cycle_is_idempotent(self, executor, handle, session_factory, notifier):
        session_factory.session = FakeImapSession({'INBOX': [make_message(1), make_message(2)]})
        executor.run(handle)

        session_factory.session = FakeImapSession({'INBOX': [make_message(1), make_message(2)]})
        result = executor.run(handle)

        assert result.notified == 0
        assert len(notifier.calls) == 2

    def test_updates_runtime_status(self, executor, handle, session_factory):
        session_factory.session = FakeImapSession({'INBOX': [make_message(1)], 'Spam': []})
        executor.run(handle)

        snapshot = handle.runtime.snapshot()
        assert snapshot.unread_count == 1
        assert snapshot.last_check_time is not None
        assert snapshot.history_size == 1

    def test_filtered_messages_are_not_recorded(self, executor, session_factory, notifier):
        account = make_account(filters=FilterPolicy(exclude_keywords=('newsletter',)))
        handle = AccountHandle(account)
        session_factory.session = FakeImapSession({'INBOX': [
            make_message(1, subject='Weekly Newsletter'),
            make_message(2, subject='Invoice #4'),
        ]})

        result = executor.run(handle)

        assert result.notified == 1
        assert 'Invoice #4' in notifier.calls[0][1]
        assert handle.runtime.history.to_list() == ['INBOX-2']

    def test_failing_folder_is_skipped(self, executor, handle, session_factory):
        session_factory.session = FakeImapSession(
            {'INBOX': [make_message(1)], 'Broken': [make_message(2)], 'Work': [make_message(3)]},
            failing={'Broken'},
        )

        result = executor.run(handle)

        assert result.ok is True
        assert result.skipped_folders == ('Broken',)
        assert result.notified == 2

    def test_folder_policy_is_applied(self, executor, session_factory):
        account = make_account(folders=FolderPolicy(mode=FolderMode.EXCLUDE, exclude=('Spam', 'Trash')))
        session = FakeImapSession({'INBOX': [], 'Spam': [], 'Work': [], 'Trash': []})
        session_factory.session = session

        executor.run(AccountHandle(account))

        assert session.selected_history == ['INBOX', 'Work']

    def test_include_folder_missing_on_server_is_skipped(self, executor, session_factory):
        account = make_account(folders=FolderPolicy(mode=FolderMode.INCLUDE, include=('Archive', 'INBOX')))
        session_factory.session = FakeImapSession({'INBOX': [make_message(1)]})

        result = executor.run(AccountHandle(account))

        assert result.skipped_folders == ('Archive',)
        assert result.notified == 1

    def test_sound_flag_is_passed_through(self, executor, session_factory, notifier):
        account = make_account(enable_notification_sound=False)
        session_factory.session = FakeImapSession({'INBOX': [make_message(1)]})

        executor.run(AccountHandle(account))

        assert notifier.calls[0][2] is False

    def test_long_subject_is_truncated(self, executor, handle, session_factory, notifier):
        subject = 'x' * 60
        session_factory.session = FakeImapSession({'INBOX': [make_message(1, subject=subject)]})

        executor.run(handle)

        assert notifier.calls[0][1].endswith('Subject: ' + 'x' * 47 + '...')


class TestPop3Cycle:
    def test_notifies_and_uses_pop3_location(self, executor, session_factory, notifier, secret_store):
        account = make_account(email='pop@example.com', protocol=Protocol.POP3)
        secret_store.set('pop@example.com', 'pw')
        session_factory.session = FakePop3Session([
            make_message('uid-a', 'a@b.com', 'One', '<1@b>'),
            make_message('uid-b', 'c@d.com', 'Two', size=200),
        ])
        handle = AccountHandle(account)

        result = executor.run(handle)

        assert result.unread_count == 2
        assert result.notified == 2
        assert notifier.titles == ['📧 pop@example.com [POP3]'] * 2
        history = handle.runtime.history.to_list()
        assert history[0] == 'pop3-uid-a-<1@b>'
        assert history[1].startswith('pop3-uid-b-sha1:')

    def test_messages_without_message_id_are_not_renotified(self, executor, session_factory, notifier, secret_store):
        """The content-hash identity is deterministic across cycles."""
        account = make_account(email='pop@example.com', protocol=Protocol.POP3)
        secret_store.set('pop@example.com', 'pw')
        handle = AccountHandle(account)

        for _ in range(2):
            session_factory.session = FakePop3Session([make_message('1', 'a@b.com', 'No id', size=10)])
            executor.run(handle)

        assert len(notifier.calls) == 1


class TestCycleFailures:
    def test_missing_password_aborts(self, executor, session_factory):
        handle = AccountHandle(make_account(email='nobody@example.com'))

        result = executor.run(handle)

        assert result.ok is False
        assert 'nobody@example.com' in result.error
        assert session_factory.calls == []
        assert handle.runtime.snapshot().last_check_time is None

    def test_connection_failure_aborts_without_touching_status(self, executor, handle, secret_store, notifier, history_store):
        def failing_factory(config, password, timeout):
            raise MailConnectionError('IMAP login failed')
        executor.session_factory = failing_factory

        result = executor.run(handle)

        assert result.ok is False
        assert result.error == 'IMAP login failed'
        assert handle.runtime.snapshot().last_check_time is None
        assert notifier.calls == []

    def test_notifier_failure_still_records_identity(self, executor, handle, session_factory, notifier):
        notifier.fail = True
        session_factory.session = FakeImapSession({'INBOX': [make_message(1)]})
        executor.run(handle)

        session_factory.session = FakeImapSession({'INBOX': [make_message(1)]})
        result = executor.run(handle)

        assert 'INBOX-1' in handle.runtime.history
        assert result.notified == 0
        assert len(notifier.calls) == 1

    def test_history_save_failure_keeps_memory(self, executor, handle, session_factory, history_store):
        session_factory.session = FakeImapSession({'INBOX': [make_message(1)]})

        with patch.object(history_store, 'save', side_effect=HistoryStoreError('read-only')):
            result = executor.run(handle)

        assert result.ok is True
        assert 'INBOX-1' in handle.runtime.history

    def test_no_save_when_nothing_new(self, executor, handle, session_factory, history_store):
        session_factory.session = FakeImapSession({'INBOX': []})

        with patch.object(history_store, 'save') as mock_save:
            executor.run(handle)

        mock_save.assert_not_called()

    def test_stop_event_interrupts_between_folders(self, executor, handle, session_factory, notifier):
        stop = threading.Event()
        stop.set()
        session_factory.session = FakeImapSession({'INBOX': [make_message(1)]})

        result = executor.run(handle, stop_event=stop)

        assert result.ok is False
        assert result.error == 'stopped'
        assert notifier.calls == []
        assert session_factory.session.closed is True


class TestHistoryCap:
    def test_unread_above_cap_notifies_once(self, executor, session_factory, notifier, history_store):
        """Identities still on the server must survive cleanup, however many there are."""
        handle = AccountHandle(make_account(check_history=4))

        for _ in range(3):
            session_factory.session = FakeImapSession({'INBOX': [make_message(i) for i in range(1, 6)]})
            executor.run(handle)

        assert len(notifier.calls) == 5
        expected = [f'INBOX-{i}' for i in range(1, 6)]
        assert handle.runtime.history.to_list() == expected
        assert history_store.load('me@example.com') == expected

    def test_entries_not_seen_this_cycle_are_evicted(self, executor, session_factory, history_store):
        runtime = AccountRuntime(NotificationHistory(['Work-1', 'Work-2', 'Work-3', 'Work-4']))
        handle = AccountHandle(make_account(check_history=4), runtime)
        session_factory.session = FakeImapSession({'INBOX': [make_message(9)]})

        executor.run(handle)

        assert runtime.history.to_list() == ['Work-4', 'INBOX-9']
        assert history_store.load('me@example.com') == ['Work-4', 'INBOX-9']

    def test_already_notified_messages_are_kept(self, executor, session_factory, notifier):
        runtime = AccountRuntime(NotificationHistory(['Work-1', 'INBOX-1', 'INBOX-2']))
        handle = AccountHandle(make_account(check_history=2), runtime)
        session_factory.session = FakeImapSession({'INBOX': [make_message(1), make_message(2)]})

        executor.run(handle)

        assert notifier.calls == []
        assert runtime.history.to_list() == ['INBOX-1', 'INBOX-2']


class TestMalformedHeaders:
    def test_bad_encoded_word_does_not_abort_cycle(self, executor, handle, session_factory, notifier):
        imap = MagicMock()
        imap.list.return_value = ('OK', [b'(\\HasNoChildren) "/" "INBOX"'])
        imap.status.return_value = ('OK', [b'"INBOX" (MESSAGES 2 UNSEEN 2)'])
        imap.select.return_value = ('OK', [b'2'])
        imap.uid.side_effect = [
            ('OK', [b'1 2']),
            ('OK', [
                (b'1 (UID 1 RFC822.SIZE 100 BODY[HEADER.FIELDS (FROM SUBJECT MESSAGE-ID)] {50}',
                 b'From: a@example.com\r\nSubject: =?utf-8?b?a?=\r\n\r\n'),
                b')',
                (b'2 (UID 2 RFC822.SIZE 100 BODY[HEADER.FIELDS (FROM SUBJECT MESSAGE-ID)] {40}',
                 b'From: b@example.com\r\nSubject: Fine\r\n\r\n'),
                b')',
            ]),
        ]
        session_factory.session = ImapSession(imap)

        result = executor.run(handle)

        assert result.ok is True
        assert result.notified == 2
        assert notifier.calls[0][1] == 'From: a@example.com\nSubject: =?utf-8?b?a?='
        assert notifier.calls[1][1] == 'From: b@example.com\nSubject: Fine'

    def test_sender_without_address_is_shown_as_is(self, executor, handle, session_factory, notifier):
        session_factory.session = FakeImapSession({'INBOX': [make_message(1, sender='  Mailer Daemon ')]})

        executor.run(handle)

        assert notifier.calls[0][1] == 'From: Mailer Daemon\nSubject: Hello'

    def test_sender_without_address_can_be_excluded(self, executor, session_factory, notifier):
        handle = AccountHandle(make_account(filters=FilterPolicy(exclude_senders=('mailer daemon',))))
        session_factory.session = FakeImapSession({'INBOX': [make_message(1, sender='Mailer Daemon')]})

        executor.run(handle)

        assert notifier.calls == []


class TestPop3SocketErrors:
    def test_uidl_socket_error_fails_the_cycle(self, executor, session_factory, secret_store):
        secret_store.secrets['pop@example.com'] = 's3cret'
        handle = AccountHandle(make_account(email='pop@example.com', protocol=Protocol.POP3))
        pop = MagicMock()
        pop.stat.return_value = (2, 300)
        pop.uidl.side_effect = ConnectionResetError('Connection reset by peer')
        session_factory.session = Pop3Session(pop)

        result = executor.run(handle)

        assert result.ok is False
        assert 'POP3 UIDL failed' in result.error
        pop.quit.assert_called_once()


def test_cycle_uses_one_configuration_throughout(executor, handle, session_factory, notifier):
    """A config swapped mid-cycle applies from the next cycle on."""
    first_notify = notifier.notify

    def notify(title, body, play_sound):
        first_notify(title, body, play_sound)
        handle.replace_config(make_account(filters=FilterPolicy(exclude_keywords=('hello',))))
    notifier.notify = notify
    session_factory.session = FakeImapSession({'INBOX': [make_message(1), make_message(2)]})

    result = executor.run(handle)

    assert result.notified == 2
