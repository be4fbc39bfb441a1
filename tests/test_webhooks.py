"""
Outbound webhooks and the notification inbox.
"""
import json
import os
import threading
import time
from unittest.mock import MagicMock, patch

os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory
os.environ['AUTO_RESOLVE_ENABLED'] = 'false'

import requests

from server import app
from models import db, Notification, WebhookEvent
from services.errors import NotFoundError
from services.matching_service import Notifier
from services.webhook_service import (
    SIGNATURE_HEADER, OutboundQueue, is_safe_webhook_url, sign_payload, verify_signature,
)
from tests.helpers.factories import make_account

import pytest

HOOK = 'https://hooks.example.com/relay'


@pytest.fixture
def ctx():
    app.config['TESTING'] = True
    with app.app_context():
        db.create_all()
        yield
        db.session.remove()
        db.drop_all()


@pytest.fixture
def queue(ctx):
    q = OutboundQueue(app)
    q._pool = MagicMock()
    return q


def _submitted(queue):
    """Run the delivery the queue handed to its pool, synchronously."""
    fn, *args = queue._pool.submit.call_args[0]
    db.session.commit()
    fn(*args)
    db.session.expire_all()


class TestSignature:
    def test_sign_and_verify(self):
        body = json.dumps({"event": "task_match"})
        sig = sign_payload('s3cret', body)
        assert sig.startswith('sha256=')
        assert verify_signature('s3cret', body, sig)
        assert not verify_signature('wrong', body, sig)
        assert not verify_signature('s3cret', body + ' ', sig)
        assert not verify_signature('s3cret', body, None)

    @patch('services.webhook_service.socket.gethostbyname')
    def test_private_targets_rejected(self, mock_dns):
        mock_dns.return_value = '10.0.0.7'
        assert not is_safe_webhook_url('https://internal.example.com/hook')
        mock_dns.return_value = '127.0.0.1'
        assert not is_safe_webhook_url('http://localhost/hook')
        mock_dns.return_value = '93.184.216.34'
        assert is_safe_webhook_url(HOOK)

    def test_url_without_host_rejected(self):
        assert not is_safe_webhook_url('not a url')


@patch('services.webhook_service.is_safe_webhook_url', return_value=True)
class TestOutboundQueue:
    def test_enqueue_persists_pending_event(self, mock_safe, queue):
        account, _ = make_account(webhook_url=HOOK)
        event_id = queue.enqueue(account, 'task_match', {"event": "task_match", "task_id": "t1"})
        evt = db.session.get(WebhookEvent, event_id)
        assert evt.status == 'pending'
        assert evt.attempts == 0
        queue._pool.submit.assert_called_once()

    @patch('services.webhook_service.http_requests.post')
    def test_delivery_is_signed(self, mock_post, mock_safe, queue):
        mock_post.return_value = MagicMock(status_code=200)
        account, _ = make_account(webhook_url=HOOK)
        event_id = queue.enqueue(account, 'bid_accepted', {"event": "bid_accepted", "task_id": "t1"})
        _submitted(queue)

        assert mock_post.call_count == 1
        kwargs = mock_post.call_args[1]
        assert verify_signature('s3cret', kwargs['data'], kwargs['headers'][SIGNATURE_HEADER])
        assert kwargs['headers']['X-Webhook-Event'] == 'bid_accepted'
        evt = db.session.get(WebhookEvent, event_id)
        assert evt.status == 'delivered'
        assert evt.attempts == 1
        assert evt.delivered_at is not None
        assert queue.dead_letters == []

    @patch('services.webhook_service.http_requests.post')
    def test_http_error_dead_lettered_once(self, mock_post, mock_safe, queue):
        mock_post.return_value = MagicMock(status_code=500)
        account, _ = make_account(webhook_url=HOOK)
        event_id = queue.enqueue(account, 'task_match', {"event": "task_match"})
        _submitted(queue)

        assert mock_post.call_count == 1
        evt = db.session.get(WebhookEvent, event_id)
        assert evt.status == 'failed'
        assert evt.last_error == 'HTTP 500'
        assert [d['event_id'] for d in queue.dead_letters] == [event_id]

    @patch('services.webhook_service.http_requests.post')
    def test_network_error_recorded(self, mock_post, mock_safe, queue):
        mock_post.side_effect = requests.ConnectionError("connection refused")
        account, _ = make_account(webhook_url=HOOK)
        event_id = queue.enqueue(account, 'task_match', {"event": "task_match"})
        _submitted(queue)
        evt = db.session.get(WebhookEvent, event_id)
        assert evt.status == 'failed'
        assert 'connection refused' in evt.last_error

    @patch('services.webhook_service.http_requests.post')
    def test_unsafe_url_never_posted(self, mock_post, mock_safe, queue):
        mock_safe.return_value = False
        account, _ = make_account(webhook_url=HOOK)
        event_id = queue.enqueue(account, 'task_match', {"event": "task_match"})
        _submitted(queue)
        mock_post.assert_not_called()
        assert db.session.get(WebhookEvent, event_id).last_error == 'unsafe url'

    def test_enqueue_after_shutdown_fails_fast(self, mock_safe, queue):
        queue.shutdown(wait=False)
        account, _ = make_account(webhook_url=HOOK)
        event_id = queue.enqueue(account, 'task_match', {"event": "task_match"})
        db.session.expire_all()
        assert db.session.get(WebhookEvent, event_id).status == 'failed'
        assert queue.dead_letters[0]['error'] == 'queue shut down'

    def test_concurrent_first_enqueues_share_one_pool(self, mock_safe):
        q = OutboundQueue(app)

        def slow_pool(**kwargs):
            time.sleep(0.05)
            return MagicMock()

        with patch('services.webhook_service.ThreadPoolExecutor', side_effect=slow_pool) as factory:
            pools = []
            threads = [threading.Thread(target=lambda: pools.append(q.ensure_pool())) for _ in range(5)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert factory.call_count == 1
        assert len(pools) == 5
        assert all(p is pools[0] for p in pools)


class TestNotifier:
    def test_inbox_entry_and_webhook(self, ctx):
        queue = MagicMock()
        account, _ = make_account(webhook_url=HOOK)
        Notifier(queue).notify(account.id, 'dispute_raised', None, {"response_deadline": "tomorrow"})

        rows = Notifier.list_notifications(account.id)
        assert len(rows) == 1
        assert rows[0]['type'] == 'dispute_raised'
        assert rows[0]['read'] is False
        queue.enqueue.assert_called_once()
        assert queue.enqueue.call_args[0][1] == 'dispute_raised'

    def test_no_webhook_without_url(self, ctx):
        queue = MagicMock()
        account, _ = make_account()
        Notifier(queue).notify(account.id, 'task_match')
        queue.enqueue.assert_not_called()
        assert Notification.query.filter_by(account_id=account.id).count() == 1

    def test_unknown_account_dropped(self, ctx):
        Notifier(MagicMock()).notify('missing', 'task_match')
        assert Notification.query.count() == 0

    def test_queue_failure_does_not_raise(self, ctx):
        queue = MagicMock()
        queue.enqueue.side_effect = RuntimeError("pool gone")
        account, _ = make_account(webhook_url=HOOK)
        Notifier(queue).notify(account.id, 'task_match')
        assert Notification.query.filter_by(account_id=account.id).count() == 1

    def test_mark_read(self, ctx):
        account, _ = make_account()
        notifier = Notifier()
        for _ in range(3):
            notifier.notify(account.id, 'task_match')
        ids = [n['id'] for n in Notifier.list_notifications(account.id)]

        assert Notifier.mark_read(account.id, ids[:1]) == 1
        assert len(Notifier.list_notifications(account.id, unread_only=True)) == 2
        assert Notifier.mark_read(account.id) == 2
        assert Notifier.list_notifications(account.id, unread_only=True) == []

    def test_cannot_mark_others_notifications(self, ctx):
        owner, _ = make_account()
        other, _ = make_account()
        Notifier().notify(owner.id, 'task_match')
        note_id = Notifier.list_notifications(owner.id)[0]['id']
        with pytest.raises(NotFoundError):
            Notifier.mark_read(other.id, [note_id])
