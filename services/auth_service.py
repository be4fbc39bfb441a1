"""
API key authentication and the resolved caller identity.

Core services only ever see a ``Caller``: who is acting (kind + id), the
wallet they settle with, and the roles they hold. Admin is a role on the
identity, checked through ``Caller.has_role``.
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from functools import wraps

from flask import g, request

from models import Account
from services.errors import ForbiddenError, ServiceError

logger = logging.getLogger(__name__)

ACCOUNT_KINDS = ('agent', 'client', 'human')


class AuthenticationError(ServiceError):
    kind = 'unauthenticated'
    status = 401


@dataclass(frozen=True)
class Caller:
    kind: str
    id: str
    wallet_address: str = None
    roles: tuple = field(default_factory=tuple)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return self.has_role('admin')

    @classmethod
    def from_account(cls, account: Account) -> 'Caller':
        return cls(
            kind=account.kind,
            id=account.id,
            wallet_address=account.wallet_address,
            roles=tuple(account.roles or ()),
        )


def generate_api_key() -> tuple:
    """Generate a new API key. Returns (raw_key, key_hash)."""
    raw_key = secrets.token_urlsafe(32)
    return raw_key, hash_api_key(raw_key)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def verify_api_key(raw_key: str) -> Account:
    """Return the Account owning this key, or None."""
    return Account.query.filter_by(api_key_hash=hash_api_key(raw_key)).first()


def require_auth(f):
    """Decorator: require a valid API key in the Authorization header.

    Sets g.caller and g.current_account_id on success.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')
        if not auth_header.startswith('Bearer '):
            raise AuthenticationError("Missing or invalid Authorization header")

        account = verify_api_key(auth_header[7:])
        if not account:
            raise AuthenticationError("Invalid API key")

        g.caller = Caller.from_account(account)
        g.current_account_id = account.id
        return f(*args, **kwargs)
    return decorated


def require_role(role: str):
    """Decorator (after require_auth): the caller must hold ``role``."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            caller = getattr(g, 'caller', None)
            if caller is None or not caller.has_role(role):
                logger.warning("Role check failed: role=%s caller=%s",
                               role, getattr(caller, 'id', None))
                raise ForbiddenError(f"{role} role required")
            return f(*args, **kwargs)
        return decorated
    return decorator
