"""
Sliding-window rate limiting keyed by (scope, identity).

Two interchangeable backends: an in-process limiter for single-node
deployments and a database-backed limiter that every instance sharing the
database sees. Limiters are built once per app and injected into the
services that need them.
"""
import logging
import threading
import time
from collections import defaultdict, namedtuple
from functools import wraps

from flask import current_app, g, request

from models import db, RateLimitHit
from services.errors import RateLimitedError

logger = logging.getLogger('relay.ratelimit')

RateLimitDecision = namedtuple('RateLimitDecision', ['allowed', 'remaining', 'retry_after'])


def limits_from_config(config) -> dict:
    """scope -> (max_requests, window_seconds)"""
    return {
        'api': (config['API_RATE_LIMIT'], config['API_RATE_WINDOW_SECONDS']),
        'bid': (config['BID_RATE_LIMIT'], config['BID_RATE_WINDOW_SECONDS']),
        'dispute': (config['DISPUTE_RATE_LIMIT'], config['DISPUTE_RATE_WINDOW_SECONDS']),
    }


class InMemoryRateLimiter:
    """Per-process sliding window. Counts are not shared between instances."""

    def __init__(self, limits: dict):
        self.limits = dict(limits)
        self._requests = defaultdict(list)  # (scope, identity) -> timestamps
        self._lock = threading.Lock()

    def _cleanup(self, key, window, now):
        cutoff = now - window
        self._requests[key] = [t for t in self._requests[key] if t > cutoff]
        if not self._requests[key]:
            del self._requests[key]

    def hit(self, scope: str, identity: str, max_requests: int = None) -> RateLimitDecision:
        limit, window = self.limits[scope]
        if max_requests is not None:
            limit = max_requests
        key = (scope, identity)
        now = time.time()
        with self._lock:
            self._cleanup(key, window, now)
            current = len(self._requests[key])
            if current >= limit:
                retry_after = max(1, int(self._requests[key][0] + window - now))
                return RateLimitDecision(False, 0, retry_after)
            self._requests[key].append(now)
            return RateLimitDecision(True, limit - current - 1, 0)

    def release_last(self, scope: str, identity: str):
        """Give back the most recent hit, for a request that did not go through."""
        key = (scope, identity)
        with self._lock:
            if self._requests.get(key):
                self._requests[key].pop()
                if not self._requests[key]:
                    del self._requests[key]

    def evict_expired(self) -> int:
        """Drop idle keys. Called from the eviction timer."""
        now = time.time()
        with self._lock:
            keys = list(self._requests.keys())
            before = len(keys)
            for key in keys:
                self._cleanup(key, self.limits[key[0]][1], now)
            return before - len(self._requests)

    def reset(self):
        with self._lock:
            self._requests.clear()


class SqlRateLimiter:
    """Sliding window over the rate_limit_hits table, shared by every instance.

    Each hit commits on its own, so callers check limits before starting
    their own transaction.
    """

    def __init__(self, limits: dict):
        self.limits = dict(limits)

    def hit(self, scope: str, identity: str, max_requests: int = None) -> RateLimitDecision:
        limit, window = self.limits[scope]
        if max_requests is not None:
            limit = max_requests
        now = time.time()
        cutoff = now - window
        try:
            RateLimitHit.query.filter(
                RateLimitHit.scope == scope,
                RateLimitHit.identity == identity,
                RateLimitHit.created_at <= cutoff,
            ).delete(synchronize_session=False)
            hits = RateLimitHit.query.filter_by(scope=scope, identity=identity).order_by(
                RateLimitHit.created_at.asc()
            ).all()
            if len(hits) >= limit:
                db.session.commit()
                retry_after = max(1, int(hits[0].created_at + window - now))
                return RateLimitDecision(False, 0, retry_after)
            db.session.add(RateLimitHit(scope=scope, identity=identity, created_at=now))
            db.session.commit()
            return RateLimitDecision(True, limit - len(hits) - 1, 0)
        except Exception:
            db.session.rollback()
            raise

    def release_last(self, scope: str, identity: str):
        try:
            latest = RateLimitHit.query.filter_by(scope=scope, identity=identity).order_by(
                RateLimitHit.created_at.desc()
            ).first()
            if latest is not None:
                db.session.delete(latest)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    def evict_expired(self) -> int:
        now = time.time()
        removed = 0
        try:
            for scope, (_, window) in self.limits.items():
                removed += RateLimitHit.query.filter(
                    RateLimitHit.scope == scope,
                    RateLimitHit.created_at <= now - window,
                ).delete(synchronize_session=False)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return removed

    def reset(self):
        RateLimitHit.query.delete()
        db.session.commit()


def build_rate_limiter(config):
    limits = limits_from_config(config)
    backend = config.get('RATE_LIMIT_BACKEND', 'memory')
    if backend == 'database':
        return SqlRateLimiter(limits)
    if backend != 'memory':
        raise RuntimeError(f"Unknown RATE_LIMIT_BACKEND: {backend}")
    return InMemoryRateLimiter(limits)


def enforce(limiter, scope: str, identity: str, max_requests: int = None):
    """Record a hit and raise RateLimitedError when the window is full."""
    decision = limiter.hit(scope, identity, max_requests=max_requests)
    if not decision.allowed:
        logger.info("Rate limit hit: scope=%s identity=%s retry_after=%ds",
                    scope, identity, decision.retry_after)
        raise RateLimitedError(f"Rate limit exceeded for {scope}", decision.retry_after)
    return decision


class EvictionTimer:
    """Background thread that periodically prunes expired limiter entries."""

    def __init__(self, limiter, interval_seconds: int = 300, app=None):
        self.limiter = limiter
        self.interval = interval_seconds
        self.app = app
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        self._thread = threading.Thread(target=self._run, daemon=True, name='ratelimit-evictor')
        self._thread.start()

    def stop(self, timeout: float = 2):
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def _run(self):
        while not self._stop.wait(timeout=self.interval):
            try:
                if self.app is not None:
                    with self.app.app_context():
                        try:
                            removed = self.limiter.evict_expired()
                        finally:
                            db.session.remove()
                else:
                    removed = self.limiter.evict_expired()
                if removed:
                    logger.debug("Evicted %d idle rate-limit keys", removed)
            except Exception as e:
                logger.error("Rate limiter eviction failed: %s", e)


def rate_limit(scope: str = 'api'):
    """Decorator: rate limit a route by authenticated account, else client IP."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            limiter = current_app.extensions['hireloop'].limiter
            identity = getattr(g, 'current_account_id', None) or request.remote_addr or 'unknown'
            decision = enforce(limiter, scope, identity)
            response = current_app.make_response(f(*args, **kwargs))
            response.headers['X-RateLimit-Remaining'] = str(decision.remaining)
            return response
        return decorated
    return decorator
