"""
Outbound webhook queue: HMAC-signed, at-most-once delivery.

Every delivery is a WebhookEvent row written before the attempt. The worker
makes exactly one POST and records delivered/failed; failures are also kept
in the queue's in-memory dead-letter list. Nothing is retried.
"""
import hashlib
import hmac
import ipaddress
import json
import logging
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from urllib.parse import urlparse

import requests as http_requests

from models import db, WebhookEvent

logger = logging.getLogger('relay.webhooks')

SIGNATURE_HEADER = 'X-Webhook-Signature'
MAX_DEAD_LETTERS = 100


def is_safe_webhook_url(url: str) -> bool:
    """Reject URLs that resolve to private, loopback or link-local addresses."""
    try:
        hostname = urlparse(url).hostname
        if not hostname:
            return False
        ip = ipaddress.ip_address(socket.gethostbyname(hostname))
        return ip.is_global
    except (socket.gaierror, ValueError, OSError):
        return False


def sign_payload(secret: str, body: str) -> str:
    digest = hmac.new((secret or '').encode(), body.encode(), hashlib.sha256).hexdigest()
    return f'sha256={digest}'


def verify_signature(secret: str, body: str, header_value: str) -> bool:
    """Receiver-side check, exposed for SDK users and tests."""
    return hmac.compare_digest(sign_payload(secret, body), header_value or '')


class OutboundQueue:
    """Bounded worker pool for webhook delivery with a dead-letter sink."""

    def __init__(self, app=None, max_workers: int = 8, timeout: int = 10):
        self.app = app
        self.timeout = timeout
        self._max_workers = max_workers
        self._pool = None
        self._dead_letters = []
        self._lock = threading.Lock()
        self._shutdown = threading.Event()

    def ensure_pool(self):
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix='webhook')
            return self._pool

    def enqueue(self, account, event_type: str, payload: dict) -> str:
        """Persist the event and hand it to a worker. Returns the event id.

        Runs after the triggering transition has committed; commits on its own.
        """
        evt = WebhookEvent(account_id=account.id, event_type=event_type,
                           payload=payload, status='pending', attempts=0)
        db.session.add(evt)
        db.session.commit()
        if self._shutdown.is_set():
            self._mark(evt.id, 'failed', 'queue shut down')
            return evt.id
        self.ensure_pool().submit(self._deliver, evt.id, account.webhook_url, account.webhook_secret, payload)
        return evt.id

    def _deliver(self, event_id: str, url: str, secret: str, payload: dict):
        if not is_safe_webhook_url(url):
            logger.warning("Webhook URL %s failed safety check at delivery time, skipping", url)
            self._mark(event_id, 'failed', 'unsafe url')
            return

        body = json.dumps(payload, default=str, sort_keys=True)
        headers = {
            'Content-Type': 'application/json',
            SIGNATURE_HEADER: sign_payload(secret, body),
            'X-Webhook-Event': payload.get('event', ''),
        }
        try:
            resp = http_requests.post(url, data=body, headers=headers, timeout=self.timeout)
            if resp.status_code < 400:
                logger.info("Webhook %s delivered to %s (status %d)", event_id, url, resp.status_code)
                self._mark(event_id, 'delivered')
                return
            error = f"HTTP {resp.status_code}"
        except http_requests.RequestException as e:
            error = str(e)
        logger.warning("Webhook %s to %s failed: %s", event_id, url, error)
        self._mark(event_id, 'failed', error)

    def _mark(self, event_id: str, status: str, error: str = None):
        if status == 'failed':
            self.record_failure(event_id, error)
        if self.app is None:
            return
        try:
            with self.app.app_context():
                try:
                    evt = db.session.get(WebhookEvent, event_id)
                    if evt:
                        evt.status = status
                        evt.attempts = (evt.attempts or 0) + 1
                        evt.last_error = error
                        if status == 'delivered':
                            evt.delivered_at = datetime.utcnow()
                        db.session.commit()
                finally:
                    db.session.remove()
        except Exception as e:
            logger.error("Failed to record webhook %s outcome: %s", event_id, e)

    def record_failure(self, event_id: str, error: str):
        with self._lock:
            self._dead_letters.append({
                "event_id": event_id,
                "error": error,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })
            if len(self._dead_letters) > MAX_DEAD_LETTERS:
                self._dead_letters = self._dead_letters[-MAX_DEAD_LETTERS:]

    @property
    def dead_letters(self):
        with self._lock:
            return list(self._dead_letters)

    def drain(self):
        """Wait for in-flight deliveries, then allow new ones (tests, CLI)."""
        with self._lock:
            pool, self._pool = self._pool, None
        if pool:
            pool.shutdown(wait=True)

    def shutdown(self, wait=True):
        self._shutdown.set()
        with self._lock:
            pool, self._pool = self._pool, None
        if pool:
            pool.shutdown(wait=wait)
